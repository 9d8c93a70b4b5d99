"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script builds the residuals of the bundle adjustment problem:
reprojection residuals of the tracked landmarks and of the ground control points,
and the constraints between the camera poses and their motion priors

Residuals are stacked in a single vector whose squared norm is the cost minimized by scipy least_squares
Robust losses are folded into the residuals, i.e. each residual block r is scaled by sqrt(rho(s) / s),
where s is the squared norm of r and rho is the Huber function, so that the solver minimizes 0.5 * sum(rho(s))
"""

import numpy as np
from joblib import Parallel, delayed
from scipy.sparse import lil_matrix

from sfm_adjust import ba_params, ba_rotate
from sfm_adjust.cam_models import project_pts3d, reprojection_cost_function
from sfm_adjust.loader import flush_print


class Error(Exception):
    pass


# scale of the Huber loss applied to the reprojection residuals of the landmarks (pixels)
LANDMARK_LOSS_SCALE = 4.0 ** 2


def huber_scaling(sq_norms, a):
    """
    Factors that fold the Huber loss rho(s) = s if s <= a^2 else 2 * a * sqrt(s) - a^2 into a set of residual blocks

    Args:
        sq_norms: N valued vector with the squared norm s of each residual block
        a: scale of the loss, residual blocks with norm below a are not downweighted

    Returns:
        scale: N valued vector with the factor sqrt(rho(s) / s) of each residual block
    """
    sq_norms = np.asarray(sq_norms, dtype=np.float64)
    b = a * a
    scale = np.ones(sq_norms.shape)
    outer = sq_norms > b
    s = sq_norms[outer]
    scale[outer] = np.sqrt(np.maximum(2.0 * a * np.sqrt(s) - b, 0.0) / s)
    return scale


def yaw_residual(yaw, yaw_prior, weight=1.0):
    """
    Smooth distance between two yaw angles (radians), insensitive to wraps of 2 pi
    """
    return weight * ((np.cos(yaw) - np.cos(yaw_prior)) ** 2 + (np.sin(yaw) - np.sin(yaw_prior)) ** 2)


class ReprojectionGroup:
    def __init__(self, kind, intrinsic, loss_scale):
        """
        Set of reprojection residuals sharing the same intrinsic model, evaluated in a vectorized way

        Args:
            kind: "landmark" or "control_point"
            intrinsic: the Intrinsic shared by all observations of the group
            loss_scale: scale of the Huber loss of each residual block, None for a plain squared penalty
        """
        self.kind = kind
        self.intrinsic = intrinsic
        self.model = intrinsic.model
        self.width, self.height = intrinsic.width, intrinsic.height
        self.loss_scale = loss_scale
        self.pts2d, self.weights, self.keys = [], [], []

    def add(self, cost_function, intrinsic_key, pose_key, point_key):
        self.pts2d.append(cost_function.observation)
        self.weights.append(cost_function.weight)
        self.keys.append((intrinsic_key, pose_key, point_key))

    @property
    def n_obs(self):
        return len(self.keys)

    def finalize(self, arena):
        """
        Converts the block keys of each observation to indices in the full vector of parameters
        """
        self.pts2d = np.array(self.pts2d).reshape(-1, 2)
        self.weights = np.array(self.weights, dtype=np.float64)
        intrinsic_key = self.keys[0][0]
        n_params_K = 0 if intrinsic_key is None else arena.blocks[intrinsic_key].size
        self.intrinsic_ind = np.zeros((self.n_obs, n_params_K), dtype=int)
        self.pose_ind = np.zeros((self.n_obs, 6), dtype=int)
        self.point_ind = np.zeros((self.n_obs, 3), dtype=int)
        for i, (k_key, pose_key, point_key) in enumerate(self.keys):
            if k_key is not None:
                self.intrinsic_ind[i] = arena.block_indices(k_key)
            self.pose_ind[i] = arena.block_indices(pose_key)
            self.point_ind[i] = arena.block_indices(point_key)

    def split(self, max_obs):
        """
        Splits the group in chunks of at most max_obs observations, to distribute them across threads
        """
        chunks = []
        for i in np.arange(0, self.n_obs, max_obs):
            chunk = ReprojectionGroup(self.kind, self.intrinsic, self.loss_scale)
            chunk.pts2d, chunk.weights = self.pts2d[i : i + max_obs], self.weights[i : i + max_obs]
            chunk.keys = self.keys[i : i + max_obs]
            chunk.intrinsic_ind = self.intrinsic_ind[i : i + max_obs]
            chunk.pose_ind = self.pose_ind[i : i + max_obs]
            chunk.point_ind = self.point_ind[i : i + max_obs]
            chunks.append(chunk)
        return chunks

    def projection_errors(self, x_full):
        """
        Unweighted difference between the projections and the observations, Nx2 array
        """
        params = x_full[self.intrinsic_ind]
        pts_proj = project_pts3d(
            self.model, x_full[self.point_ind], x_full[self.pose_ind], params, self.width, self.height
        )
        return pts_proj - self.pts2d

    def evaluate(self, x_full):
        r = self.weights[:, np.newaxis] * self.projection_errors(x_full)
        if self.loss_scale is not None:
            r *= huber_scaling(np.sum(r ** 2, axis=1), self.loss_scale)[:, np.newaxis]
        return r.ravel()


class ResidualGraph:
    def __init__(self, arena, n_threads=1, min_observations_per_thread=2000):
        """
        Container of all residual blocks of a bundle adjustment problem

        Args:
            arena: ParameterBlockArena holding the parameter blocks the residuals depend on
            n_threads (optional): number of threads used to evaluate the reprojection residuals
            min_observations_per_thread (optional): observations of a camera are not split in chunks smaller than this
        """
        self.arena = arena
        self.n_threads = max(1, int(n_threads))
        self.min_observations_per_thread = max(1, int(min_observations_per_thread))
        self.groups = {}
        self.n_blocks = {"landmark": 0, "control_point": 0, "pose_center_prior": 0, "pose_rotation_prior": 0}
        self.center_priors, self.rotation_priors = [], []
        self.center_loss_scale, self.rotation_loss_scale = None, None
        self.finalized = False

    def add_reprojection_residual(self, kind, intrinsic_id, intrinsic, cost_function, pose_key, point_key, loss_scale):
        group_key = (kind, intrinsic_id)
        if group_key not in self.groups:
            self.groups[group_key] = ReprojectionGroup(kind, intrinsic, loss_scale)
        intrinsic_key = ("intrinsic", intrinsic_id) if cost_function.n_parameter_blocks == 3 else None
        self.groups[group_key].add(cost_function, intrinsic_key, pose_key, point_key)
        self.n_blocks[kind] += 1

    def add_pose_center_prior(self, pose_key, pose_center, center_weight, loss_scale):
        """
        Residual center_weight * (C - pose_center), where C is the center of the camera pose
        """
        self.center_priors.append((pose_key, np.array(pose_center), np.array(center_weight)))
        self.center_loss_scale = loss_scale
        self.n_blocks["pose_center_prior"] += 1

    def add_pose_rotation_prior(self, pose_key, pose_rotation, rotation_weight, loss_scale):
        """
        Residual rotation_weight * ((cos(yaw) - cos(yaw_prior))^2 + (sin(yaw) - sin(yaw_prior))^2)
        """
        self.rotation_priors.append((pose_key, ba_rotate.yaw_from_R(pose_rotation), float(rotation_weight)))
        self.rotation_loss_scale = loss_scale
        self.n_blocks["pose_rotation_prior"] += 1

    def finalize(self):
        """
        Freezes the problem, returns the initial vector of variables to optimize
        """
        params_opt = self.arena.finalize()
        self.chunks = []
        for group_key in sorted(self.groups, key=lambda k: (k[0] != "landmark", k[1])):
            group = self.groups[group_key]
            group.finalize(self.arena)
            max_obs = group.n_obs if self.n_threads == 1 else self.min_observations_per_thread
            self.chunks.extend(group.split(max_obs))

        n_c, n_r = len(self.center_priors), len(self.rotation_priors)
        self.center_pose_ind = np.array([self.arena.block_indices(p[0]) for p in self.center_priors], dtype=int).reshape(n_c, 6)
        self.center_targets = np.array([p[1] for p in self.center_priors]).reshape(n_c, 3)
        self.center_weights = np.array([p[2] for p in self.center_priors]).reshape(n_c, 3)
        self.rotation_pose_ind = np.array([self.arena.block_indices(p[0]) for p in self.rotation_priors], dtype=int).reshape(n_r, 6)
        self.rotation_targets = np.array([p[1] for p in self.rotation_priors]).reshape(n_r)
        self.rotation_weights = np.array([p[2] for p in self.rotation_priors]).reshape(n_r)

        self.n_obs = sum(c.n_obs for c in self.chunks)
        self.n_residuals = 2 * self.n_obs + 3 * n_c + n_r
        self.finalized = True
        return params_opt

    def pose_center_prior_residuals(self, x_full):
        if self.center_targets.shape[0] == 0:
            return np.array([])
        poses = x_full[self.center_pose_ind]
        centers = -ba_rotate.rotate_rodrigues_inverse(poses[:, 3:6], poses[:, :3])
        r = self.center_weights * (centers - self.center_targets)
        r *= huber_scaling(np.sum(r ** 2, axis=1), self.center_loss_scale)[:, np.newaxis]
        return r.ravel()

    def pose_rotation_prior_residuals(self, x_full):
        if self.rotation_targets.shape[0] == 0:
            return np.array([])
        yaw = ba_rotate.yaw_from_axis_angles(x_full[self.rotation_pose_ind][:, :3])
        r = yaw_residual(yaw, self.rotation_targets, self.rotation_weights)
        return r * huber_scaling(r ** 2, self.rotation_loss_scale)

    def fun(self, v):
        """
        Compute bundle adjustment residuals

        Args:
            v: vector of variables to optimize

        Returns:
            residuals: vector with all residuals stacked, reprojection residuals (x'-x, y'-y) first,
                       then the pose center prior residuals and the pose rotation prior residuals
        """
        x_full = self.arena.get_vars_ready_for_fun(v)
        if self.n_threads > 1 and len(self.chunks) > 1:
            parallel = Parallel(n_jobs=self.n_threads, backend="threading")
            reprojection = parallel(delayed(c.evaluate)(x_full) for c in self.chunks)
        else:
            reprojection = [c.evaluate(x_full) for c in self.chunks]
        priors = [self.pose_center_prior_residuals(x_full), self.pose_rotation_prior_residuals(x_full)]
        return np.hstack(reprojection + priors + [np.array([])])

    def evaluate_reprojection_errors(self, v, kind="landmark"):
        """
        Computes the reprojection error (pixel units, unweighted) of each 2d observation of a kind of landmark
        """
        x_full = self.arena.get_vars_ready_for_fun(v)
        errors = [np.linalg.norm(c.projection_errors(x_full), axis=1) for c in self.chunks if c.kind == kind]
        return np.hstack(errors + [np.array([])])

    def build_jacobian_sparsity(self):
        """
        Builds the sparse matrix employed to compute the Jacobian of the bundle adjustment problem

        Returns:
            A: output sparse matrix, with a 1 where a residual depends on a variable
        """
        column_of = self.arena.column_of
        rows, cols = [], []

        def fill(row_ind, param_ind):
            # row_ind: N x R rows of each block, param_ind: N x P full vector indices the block depends on
            c = column_of[param_ind]
            R, P = row_ind.shape[1], param_ind.shape[1]
            rr = np.repeat(row_ind, P, axis=1)
            cc = np.tile(c, (1, R))
            valid = cc >= 0
            rows.append(rr[valid])
            cols.append(cc[valid])

        row0 = 0
        for c in self.chunks:
            row_ind = row0 + np.arange(2 * c.n_obs).reshape(c.n_obs, 2)
            fill(row_ind, np.hstack((c.intrinsic_ind, c.pose_ind, c.point_ind)))
            row0 += 2 * c.n_obs
        n_c = self.center_targets.shape[0]
        fill(row0 + np.arange(3 * n_c).reshape(n_c, 3), self.center_pose_ind)
        row0 += 3 * n_c
        n_r = self.rotation_targets.shape[0]
        fill(row0 + np.arange(n_r).reshape(n_r, 1), self.rotation_pose_ind)

        A = lil_matrix((self.n_residuals, self.arena.n_params), dtype=int)
        rows, cols = np.hstack(rows).astype(int), np.hstack(cols).astype(int)
        if rows.size > 0:
            A[rows, cols] = 1
        return A


def observation_view(sfm_data, kind, landmark_id, view_id):
    """
    Returns the view of an observation, raises an Error if the view is not linked to a pose and an intrinsic
    """
    if view_id not in sfm_data.views:
        raise Error("{} {} is observed by the undefined view {}".format(kind, landmark_id, view_id))
    view = sfm_data.views[view_id]
    if view.id_pose not in sfm_data.poses or view.id_intrinsic not in sfm_data.intrinsics:
        raise Error("view {} has an undefined pose or intrinsic".format(view_id))
    return view


def check_observations(sfm_data, optimize_options):
    """
    Checks that every observation of the scene can be turned into a reprojection residual, i.e. that its view is
    linked to a pose and to an intrinsic with a supported camera model
    Control points are only checked if they are used
    """
    landmarks = [("landmark", k, sfm_data.structure[k]) for k in sorted(sfm_data.structure)]
    if optimize_options.control_point_opt.use_control_points:
        landmarks += [("control_point", k, sfm_data.control_points[k]) for k in sorted(sfm_data.control_points)]
    supported = {}
    for kind, landmark_id, landmark in landmarks:
        for view_id in sorted(landmark.obs):
            view = observation_view(sfm_data, kind, landmark_id, view_id)
            intrinsic = sfm_data.intrinsics[view.id_intrinsic]
            if view.id_intrinsic not in supported:
                cost_function = reprojection_cost_function(intrinsic, landmark.obs[view_id].x)
                supported[view.id_intrinsic] = cost_function is not None
            if not supported[view.id_intrinsic]:
                raise Error("Cannot create a cost function for the camera model {}".format(intrinsic.model))


def build_residual_graph(sfm_data, optimize_options, registration=None, use_loss_function=True, n_threads=1,
                         min_observations_per_thread=2000, verbose=False):
    """
    Defines the parameter blocks and the residual blocks of the bundle adjustment of a scene

    Args:
        sfm_data: SfMData instance
        optimize_options: OptimizeOptions instance with the policies of each kind of parameter
        registration (optional): PriorRegistration instance, prior constraints are added only if it is usable
        use_loss_function (optional): if False, reprojection residuals of landmarks are not robustified
        n_threads (optional): number of threads used to evaluate the residuals
        min_observations_per_thread (optional): minimum size of the chunks of observations evaluated by a thread
        verbose (optional): boolean, print the number of residual blocks of each kind

    Returns:
        graph: ResidualGraph instance, finalized
        params_opt: initial vector of variables to optimize
    """
    ba_params.check_structure_opt(optimize_options.structure_opt)
    arena = ba_params.ParameterBlockArena()
    graph = ResidualGraph(arena, n_threads, min_observations_per_thread)

    # setup poses data & subparametrization
    ba_params.add_pose_blocks(arena, sfm_data, optimize_options.extrinsics_opt)
    # setup intrinsics data & subparametrization
    ba_params.add_intrinsic_blocks(arena, sfm_data, optimize_options.intrinsics_opt)

    def add_observations(kind, landmark_id, landmark, weight, loss_scale):
        if len(landmark.obs) == 0:
            return
        point_key = (kind, landmark_id)
        arena.add_parameter_block(point_key, landmark.X, borrow=True)
        for view_id in sorted(landmark.obs):
            view = observation_view(sfm_data, kind, landmark_id, view_id)
            intrinsic = sfm_data.intrinsics[view.id_intrinsic]
            cost_function = reprojection_cost_function(intrinsic, landmark.obs[view_id].x, weight)
            if cost_function is None:
                raise Error("Cannot create a cost function for the camera model {}".format(intrinsic.model))
            pose_key = ("pose", view.id_pose)
            graph.add_reprojection_residual(kind, view.id_intrinsic, intrinsic, cost_function, pose_key, point_key,
                                            loss_scale)

    # reprojection residuals of the tracked landmarks
    landmark_loss_scale = LANDMARK_LOSS_SCALE if use_loss_function else None
    for landmark_id in sorted(sfm_data.structure):
        landmark = sfm_data.structure[landmark_id]
        add_observations("landmark", landmark_id, landmark, 0.0, landmark_loss_scale)
        if optimize_options.structure_opt == "NONE" and arena.has_parameter_block(("landmark", landmark_id)):
            arena.set_parameter_block_constant(("landmark", landmark_id))

    # ground control points: fixed 3d points with weighted observations and no robust loss
    cp_options = optimize_options.control_point_opt
    if cp_options.use_control_points:
        for gcp_id in sorted(sfm_data.control_points):
            gcp = sfm_data.control_points[gcp_id]
            if len(gcp.obs) == 0:
                flush_print("WARNING: Cannot use this GCP id: {}. There is not linked image observation.".format(gcp_id))
                continue
            add_observations("control_point", gcp_id, gcp, cp_options.weight, None)
            arena.set_parameter_block_constant(("control_point", gcp_id))

    # motion prior constraints
    if registration is not None and registration.usable:
        center_loss_scale = registration.pose_center_robust_fitting_error ** 2
        rotation_loss_scale = registration.pose_rotation_robust_fitting_error ** 2
        for view in sfm_data.views_with_prior():
            pose_key = ("pose", view.id_pose)
            if view.prior.use_pose_center:
                graph.add_pose_center_prior(pose_key, view.prior.pose_center, view.prior.center_weight,
                                            center_loss_scale)
            if view.prior.use_pose_rotation:
                graph.add_pose_rotation_prior(pose_key, view.prior.pose_rotation, view.prior.rotation_weight,
                                              rotation_loss_scale)

    params_opt = graph.finalize()
    if verbose:
        flush_print("Residual blocks: {}".format(", ".join("{} {}".format(v, k) for k, v in graph.n_blocks.items())))
    return graph, params_opt
