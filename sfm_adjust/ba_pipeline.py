"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements the BundleAdjustment class
This class takes a Structure-from-Motion scene and refines it following the next blockchain
(1) registration of the scene to its motion priors (optional)
(2) definition of the parameter blocks (poses, intrinsics, landmarks) according to the optimization policies
(3) definition of the residual blocks (landmarks, ground control points, motion priors)
(4) numerical optimization
(5) update of the scene with the refined parameters, only if the solution is usable
    if any step fails, the scene is restored to its state before step (1)
(6) inverse of the re-centering of step (1) and fitting statistics with respect to the priors (optional)
"""

import numpy as np

from sfm_adjust import ba_core, ba_metrics, ba_params, ba_problem, ba_registration, cam_models, loader
from sfm_adjust.ba_core import BundleAdjustmentOptions
from sfm_adjust.loader import flush_print
from sfm_adjust.sfm_data import Pose3, SceneSnapshot, apply_similarity


class Error(Exception):
    pass


class ControlPointOptions:
    def __init__(self, use_control_points=False, weight=20.0):
        """
        Args:
            use_control_points (optional): boolean, add the observations of the ground control points
            weight (optional): weight of the reprojection residuals of the ground control points
        """
        self.use_control_points = use_control_points
        self.weight = weight


class OptimizeOptions:
    def __init__(self, extrinsics_opt="ADJUST_ALL", intrinsics_opt="ADJUST_ALL", structure_opt="ADJUST",
                 use_motion_priors_opt=False, control_point_opt=None):
        """
        Policies defining which parameters of the scene are refined and which constraints are used

        Args:
            extrinsics_opt (optional): "NONE", "ADJUST_ROTATION", "ADJUST_TRANSLATION" or "ADJUST_ALL"
            intrinsics_opt (optional): "NONE", "ADJUST_ALL" or a list of flags among "ADJUST_FOCAL_LENGTH",
                                       "ADJUST_PRINCIPAL_POINT", "ADJUST_DISTORTION"
            structure_opt (optional): "NONE" or "ADJUST"
            use_motion_priors_opt (optional): boolean, register the scene to the motion priors and constrain the poses
            control_point_opt (optional): ControlPointOptions instance
        """
        self.extrinsics_opt = extrinsics_opt
        self.intrinsics_opt = intrinsics_opt
        self.structure_opt = structure_opt
        self.use_motion_priors_opt = use_motion_priors_opt
        self.control_point_opt = ControlPointOptions() if control_point_opt is None else control_point_opt

    @classmethod
    def from_dict(cls, d):
        cp = d.get("control_point_opt", {})
        return cls(
            extrinsics_opt=d.get("extrinsics_opt", "ADJUST_ALL"),
            intrinsics_opt=d.get("intrinsics_opt", "ADJUST_ALL"),
            structure_opt=d.get("structure_opt", "ADJUST"),
            use_motion_priors_opt=d.get("use_motion_priors_opt", False),
            control_point_opt=ControlPointOptions(cp.get("use_control_points", False), cp.get("weight", 20.0)),
        )


# errors raised by the package when the scene or the options are not valid
PRECONDITION_ERRORS = (Error, ba_params.Error, ba_problem.Error, ba_core.Error, cam_models.Error)


class BundleAdjustment:
    def __init__(self, options=None):
        """
        Args:
            options (optional): BundleAdjustmentOptions instance with the configuration of the solver
        """
        self.options = BundleAdjustmentOptions() if options is None else options

        # diagnostics of the last call to adjust
        self.summary = None
        self.registration = None
        self.statistics = None
        self.err_init, self.err_ba = None, None

    def adjust(self, sfm_data, optimize_options=None):
        """
        Refines the scene in place, the scene is left unchanged if the adjustment fails

        Args:
            sfm_data: SfMData instance
            optimize_options (optional): OptimizeOptions instance, all parameters are refined by default

        Returns:
            True if the solver produced a usable solution, False otherwise
        """
        optimize_options = OptimizeOptions() if optimize_options is None else optimize_options
        snapshot = SceneSnapshot(sfm_data)
        try:
            success = self.run(sfm_data, optimize_options)
        except PRECONDITION_ERRORS as e:
            flush_print("ERROR: Bundle adjustment failed: {}".format(e))
            success = False
        if not success:
            snapshot.restore(sfm_data)
        return success

    def run(self, sfm_data, optimize_options):
        config = self.options.config
        verbose = config["verbose"]
        self.summary, self.registration, self.statistics = None, None, None

        # check the policies before touching the scene
        ba_params.check_extrinsics_opt(optimize_options.extrinsics_opt)
        intrinsic_flags = ba_params.normalize_intrinsics_opt(optimize_options.intrinsics_opt)
        ba_params.check_structure_opt(optimize_options.structure_opt)
        cp_options = optimize_options.control_point_opt
        if cp_options.use_control_points and not cp_options.weight >= 0:
            raise Error("the weight of the ground control points must be non negative")
        ba_problem.check_observations(sfm_data, optimize_options)

        # (1) registration to the motion priors
        usable_prior = False
        if optimize_options.use_motion_priors_opt and len(sfm_data.views) > 3:
            self.registration = ba_registration.register_scene_to_priors(sfm_data, seed=config["seed"], verbose=verbose)
            usable_prior = self.registration.usable

        # (2) + (3) parameter blocks and residual blocks
        graph, params_opt = ba_problem.build_residual_graph(
            sfm_data,
            optimize_options,
            registration=self.registration,
            use_loss_function=config["use_loss_function"],
            n_threads=config["nb_threads"],
            min_observations_per_thread=config["min_observations_per_thread"],
            verbose=verbose,
        )
        arena = graph.arena

        # (4) numerical optimization
        vars_ba, self.summary = ba_core.run_ba_optimization(graph, params_opt, config)
        self.err_init = graph.evaluate_reprojection_errors(params_opt)
        self.err_ba = graph.evaluate_reprojection_errors(vars_ba)

        if not self.summary.is_solution_usable():
            flush_print("ERROR: The solution is not usable. Bundle Adjustment failed.")
            return False

        if verbose:
            self.display_statistics(sfm_data, usable_prior)

        # (5) update the scene with the refined data
        arena.write_back(vars_ba)
        self.update_poses(sfm_data, arena, optimize_options.extrinsics_opt)
        if len(intrinsic_flags) > 0:
            for intrinsic_id, intrinsic in sfm_data.intrinsics.items():
                if arena.has_parameter_block(("intrinsic", intrinsic_id)):
                    intrinsic.update_from_params(arena.blocks[("intrinsic", intrinsic_id)])

        # (6) back to the original scene centroid and fitting statistics
        if usable_prior:
            apply_similarity(self.registration.sim_to_center.inverse(), sfm_data, transform_priors=True)
            self.statistics = ba_registration.compute_prior_fitting_statistics(sfm_data)
            if verbose:
                self.display_prior_statistics()
        return True

    def update_poses(self, sfm_data, arena, extrinsics_opt):
        """
        Writes the refined pose blocks to the scene, only the components that were refined are updated
        """
        if extrinsics_opt == "NONE":
            return
        for pose_id in sfm_data.poses:
            refined = ba_params.pose_from_pose_block(arena.blocks[("pose", pose_id)])
            pose = sfm_data.poses[pose_id]
            if extrinsics_opt == "ADJUST_ROTATION":
                pose.rotation = refined.rotation
            elif extrinsics_opt == "ADJUST_TRANSLATION":
                pose.center = refined.center
            else:
                sfm_data.poses[pose_id] = Pose3(refined.rotation, refined.center)

    def display_statistics(self, sfm_data, usable_prior):
        s = self.summary
        flush_print("\nBundle Adjustment statistics (approximated RMSE):")
        d = {
            "#views": len(sfm_data.views),
            "#poses": len(sfm_data.poses),
            "#intrinsics": len(sfm_data.intrinsics),
            "#tracks": len(sfm_data.structure),
            "#residuals": s.num_residuals,
            "Initial RMSE": ba_metrics.rmse_from_cost(s.initial_cost, s.num_residuals),
            "Final RMSE": ba_metrics.rmse_from_cost(s.final_cost, s.num_residuals),
            "Time (s)": loader.get_time_in_hours_mins_secs(s.total_time_in_seconds),
            "Used motion prior": int(usable_prior),
        }
        loader.display_dict(d)
        if self.err_init.size > 0:
            to_print = [np.mean(self.err_init), np.median(self.err_init)]
            flush_print("Reprojection error before BA (mean / median): {:.2f} / {:.2f}".format(*to_print))
            to_print = [np.mean(self.err_ba), np.median(self.err_ba)]
            flush_print("Reprojection error after  BA (mean / median): {:.2f} / {:.2f}\n".format(*to_print))

    def display_prior_statistics(self):
        reg = self.registration
        if self.statistics["center"] is not None:
            flush_print("Pose prior statistics (user units):")
            flush_print(" - Starting median fitting error: {}".format(reg.pose_center_robust_fitting_error))
            ba_metrics.print_statistics(self.statistics["center"], " - Final fitting error:")
        if self.statistics["rotation"] is not None:
            flush_print("Rotation prior statistics (user units):")
            flush_print(" - Starting median fitting error: {}".format(reg.pose_rotation_robust_fitting_error))
            ba_metrics.print_statistics(self.statistics["rotation"], " - Final fitting error:")


def adjust(sfm_data, optimize_options=None, ba_options=None):
    """
    Refines a Structure-from-Motion scene in place, returns True if the solver produced a usable solution
    """
    return BundleAdjustment(ba_options).adjust(sfm_data, optimize_options)
