"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements the most important functions for the resolution of a bundle adjustment optimization
The problem is solved with scipy least_squares (trust region reflective method) using a finite differences
Jacobian, whose sparsity pattern is given explicitly when a sparse linear solver is available
"""

import importlib.util
import os
import time

import numpy as np
from scipy.optimize import least_squares

from sfm_adjust.loader import display_dict, flush_print


class Error(Exception):
    pass


# sparse linear solvers usable by least_squares, in order of preference: (tr_solver, module)
SPARSE_BACKENDS = [("lsmr", "scipy.sparse.linalg")]

LINEAR_SOLVER_TYPES = ["dense_schur", "sparse_schur"]
PRECONDITIONER_TYPES = ["jacobi", "identity"]


def find_sparse_backend():
    """
    Returns the name of the first available sparse linear solver of SPARSE_BACKENDS, None if there is none
    """
    for tr_solver, module_name in SPARSE_BACKENDS:
        try:
            found = importlib.util.find_spec(module_name) is not None
        except ModuleNotFoundError:
            found = False
        if found:
            return tr_solver
    return None


def init_optimization_config(config=None):
    """
    Initializes the configuration of the bundle adjustment optimization algorithm

    Args:
        config: dict possibly containing values that we want to be different from default
                the default configuration is used for all parameters not specified in config

    Returns:
        output_config: dict where keys identify the parameters and values their assigned value
    """
    keys = [
        "nb_threads",
        "linear_solver_type",
        "preconditioner_type",
        "max_num_iterations",
        "max_linear_solver_iterations",
        "parameter_tolerance",
        "gradient_tolerance",
        "function_tolerance",
        "use_loss_function",
        "min_observations_per_thread",
        "seed",
        "summary",
        "verbose",
    ]
    default_values = [os.cpu_count() or 1, None, "jacobi", 50, 500, 1e-8, 1e-10, 1e-6, True, 2000, 0, False, True]
    output_config = dict(zip(keys, default_values))
    if config is not None:
        unknown_keys = set(config.keys()) - set(keys)
        if len(unknown_keys) > 0:
            raise Error("unknown bundle adjustment options: {}".format(sorted(unknown_keys)))
        output_config.update(config)

    # use a sparse solver whenever a sparse backend is available
    if output_config["linear_solver_type"] is None:
        sparse_backend = find_sparse_backend()
        output_config["linear_solver_type"] = "dense_schur" if sparse_backend is None else "sparse_schur"
    if output_config["linear_solver_type"] not in LINEAR_SOLVER_TYPES:
        raise Error("{} is not a valid linear_solver_type".format(output_config["linear_solver_type"]))
    if output_config["preconditioner_type"] not in PRECONDITIONER_TYPES:
        raise Error("{} is not a valid preconditioner_type".format(output_config["preconditioner_type"]))
    output_config["nb_threads"] = max(1, int(output_config["nb_threads"]))
    return output_config


class BundleAdjustmentOptions:
    def __init__(self, verbose=True, multithreaded=True, **overrides):
        """
        Configuration of the optimization driver

        Args:
            verbose (optional): boolean, print the progress of the solver and the final statistics
            multithreaded (optional): if False, a single thread is used, otherwise one thread per cpu
            overrides (optional): any other key accepted by init_optimization_config
        """
        config = dict(overrides)
        config["verbose"] = verbose
        if not multithreaded:
            config["nb_threads"] = 1
        self.config = init_optimization_config(config)

    def __getattr__(self, name):
        config = self.__dict__.get("config", {})
        if name in config:
            return config[name]
        raise AttributeError(name)


class SolverSummary:
    def __init__(self, num_residuals=0, num_parameters=0):
        """
        Outcome of a call to run_ba_optimization
        """
        self.num_residuals = num_residuals
        self.num_parameters = num_parameters
        self.initial_cost = np.nan
        self.final_cost = np.nan
        self.nfev = 0
        self.njev = 0
        self.status = -1
        self.message = ""
        self.total_time_in_seconds = 0.0
        self.usable = False

    def is_solution_usable(self):
        return self.usable

    def full_report(self):
        return {
            "residuals": self.num_residuals,
            "parameters": self.num_parameters,
            "initial cost": self.initial_cost,
            "final cost": self.final_cost,
            "function evaluations": self.nfev,
            "jacobian evaluations": self.njev,
            "status": self.status,
            "message": self.message,
            "time (s)": round(self.total_time_in_seconds, 4),
            "usable": self.usable,
        }


def run_ba_optimization(graph, params_opt, config=None):
    """
    Solves the bundle adjustment optimization problem

    Args:
        graph: ResidualGraph instance, finalized, with everything that is needed to compute the residuals
        params_opt: vector with the initial value of the variables to optimize
        config (optional): dictionary specifying a particular configuration for the optimization algorithm

    Returns:
        vars_ba: the vector with the final variables optimized by the solver
        summary: SolverSummary instance, the solution must not be used if summary.is_solution_usable() is False
    """
    config = init_optimization_config(config)
    verbose = config["verbose"]
    vars_init = params_opt.copy()
    summary = SolverSummary(graph.n_residuals, vars_init.size)
    if verbose:
        flush_print("\nRunning bundle adjustment...")
        display_dict(config)

    # compute cost at initial variable values
    residuals_init = graph.fun(vars_init)
    if not np.all(np.isfinite(residuals_init)):
        summary.message = "Residuals are not finite in the initial point"
        flush_print("ERROR: {}".format(summary.message))
        return vars_init, summary
    summary.initial_cost = 0.5 * np.sum(residuals_init ** 2)

    # nothing to optimize
    if vars_init.size == 0 or graph.n_residuals == 0:
        summary.final_cost = summary.initial_cost
        summary.status, summary.message, summary.usable = 1, "No free parameters or no residuals", True
        return vars_init, summary

    solver_kwargs = {}
    if config["linear_solver_type"] == "sparse_schur":
        A = graph.build_jacobian_sparsity()
        if verbose:
            flush_print("Shape of Jacobian sparsity: {}x{}".format(*A.shape))
        solver_kwargs["jac_sparsity"] = A
        solver_kwargs["tr_solver"] = find_sparse_backend()
        solver_kwargs["tr_options"] = {"maxiter": config["max_linear_solver_iterations"]}
    else:
        solver_kwargs["tr_solver"] = "exact"

    # run bundle adjustment
    t0 = time.time()
    try:
        res = least_squares(
            graph.fun,
            vars_init,
            verbose=2 if verbose else 0,
            x_scale="jac" if config["preconditioner_type"] == "jacobi" else 1.0,
            method="trf",
            ftol=config["function_tolerance"],
            xtol=config["parameter_tolerance"],
            gtol=config["gradient_tolerance"],
            max_nfev=config["max_num_iterations"],
            **solver_kwargs,
        )
    except ValueError as e:
        summary.total_time_in_seconds = time.time() - t0
        summary.message = str(e)
        flush_print("ERROR: The solver failed: {}".format(e))
        return vars_init, summary
    summary.total_time_in_seconds = time.time() - t0
    if verbose:
        flush_print("Optimization took {:.2f} seconds\n".format(summary.total_time_in_seconds))

    summary.final_cost = res.cost
    summary.nfev, summary.njev = res.nfev, 0 if res.njev is None else res.njev
    summary.status, summary.message = res.status, res.message
    summary.usable = bool(res.status >= 0 and np.all(np.isfinite(res.x)) and np.isfinite(res.cost))
    if config["summary"]:
        display_dict(summary.full_report())
    return res.x, summary
