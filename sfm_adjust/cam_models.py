"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements all functions necessary to handle the different camera models considered in this project
The considered cameras are pinhole cameras with different distortion models, fisheye cameras and spherical cameras
Each camera model is identified by a string tag, which is used to dispatch the right projection function
"""

import numpy as np

from sfm_adjust.ba_rotate import rotate_rodrigues


class Error(Exception):
    pass


# flags describing which groups of intrinsic parameters are refined
ADJUST_FOCAL_LENGTH = "ADJUST_FOCAL_LENGTH"
ADJUST_PRINCIPAL_POINT = "ADJUST_PRINCIPAL_POINT"
ADJUST_DISTORTION = "ADJUST_DISTORTION"
INTRINSIC_FLAGS = (ADJUST_FOCAL_LENGTH, ADJUST_PRINCIPAL_POINT, ADJUST_DISTORTION)

# ordered parameter names of each camera model
CAMERA_MODELS = {
    "pinhole": ["f", "ppx", "ppy"],
    "radial1": ["f", "ppx", "ppy", "k1"],
    "radial3": ["f", "ppx", "ppy", "k1", "k2", "k3"],
    "brown": ["f", "ppx", "ppy", "k1", "k2", "k3", "t1", "t2"],
    "fisheye": ["f", "ppx", "ppy", "k1", "k2", "k3", "k4"],
    "spherical": [],
}

# radius below which the fisheye distortion is the identity
FISHEYE_EPS = 1e-8


def apply_pinhole(pts_cam, f, ppx, ppy, scale=1.0, tx=0.0, ty=0.0):
    """
    Projects a set of 3d points expressed in the camera frame using a pinhole model

    Args:
        pts_cam: Nx3 array with the (x, y, z) coordinates of N points in the camera frame
        f, ppx, ppy: N valued arrays with the focal length and principal point used for each point
        scale (optional): N valued array with a radial distortion factor applied to the normalized coordinates
        tx, ty (optional): N valued arrays with tangential distortion terms added to the normalized coordinates

    Returns:
        pts_proj: Nx2 array with the 2d (col, row) coordinates of each projection
    """
    u = pts_cam[:, 0] / pts_cam[:, 2]
    v = pts_cam[:, 1] / pts_cam[:, 2]
    cols = f * (scale * u + tx) + ppx
    rows = f * (scale * v + ty) + ppy
    return np.vstack((cols, rows)).T


def project_pinhole(pts_cam, params, width, height):
    return apply_pinhole(pts_cam, params[:, 0], params[:, 1], params[:, 2])


def project_radial1(pts_cam, params, width, height):
    u, v = pts_cam[:, 0] / pts_cam[:, 2], pts_cam[:, 1] / pts_cam[:, 2]
    r2 = u * u + v * v
    scale = 1.0 + params[:, 3] * r2
    return apply_pinhole(pts_cam, params[:, 0], params[:, 1], params[:, 2], scale)


def project_radial3(pts_cam, params, width, height):
    u, v = pts_cam[:, 0] / pts_cam[:, 2], pts_cam[:, 1] / pts_cam[:, 2]
    r2 = u * u + v * v
    k1, k2, k3 = params[:, 3], params[:, 4], params[:, 5]
    scale = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
    return apply_pinhole(pts_cam, params[:, 0], params[:, 1], params[:, 2], scale)


def project_brown(pts_cam, params, width, height):
    u, v = pts_cam[:, 0] / pts_cam[:, 2], pts_cam[:, 1] / pts_cam[:, 2]
    r2 = u * u + v * v
    k1, k2, k3, t1, t2 = params[:, 3], params[:, 4], params[:, 5], params[:, 6], params[:, 7]
    scale = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
    tx = t2 * (r2 + 2 * u * u) + 2 * t1 * u * v
    ty = t1 * (r2 + 2 * v * v) + 2 * t2 * u * v
    return apply_pinhole(pts_cam, params[:, 0], params[:, 1], params[:, 2], scale, tx, ty)


def project_fisheye(pts_cam, params, width, height):
    u, v = pts_cam[:, 0] / pts_cam[:, 2], pts_cam[:, 1] / pts_cam[:, 2]
    r = np.hypot(u, v)
    k1, k2, k3, k4 = params[:, 3], params[:, 4], params[:, 5], params[:, 6]
    theta = np.arctan(r)
    theta2 = theta * theta
    theta_dist = theta * (1.0 + theta2 * (k1 + theta2 * (k2 + theta2 * (k3 + theta2 * k4))))
    scale = np.where(r > FISHEYE_EPS, theta_dist / np.where(r > FISHEYE_EPS, r, 1.0), 1.0)
    return apply_pinhole(pts_cam, params[:, 0], params[:, 1], params[:, 2], scale)


def project_spherical(pts_cam, params, width, height):
    """
    Equirectangular projection of the bearing vectors, no intrinsic parameter is involved
    """
    lon = np.arctan2(pts_cam[:, 0], pts_cam[:, 2])
    lat = np.arctan2(-pts_cam[:, 1], np.hypot(pts_cam[:, 0], pts_cam[:, 2]))
    size = max(width, height)
    cols = lon / (2 * np.pi) * size + width / 2.0
    rows = -lat / (2 * np.pi) * size + height / 2.0
    return np.vstack((cols, rows)).T


PROJECTION_FUNCTIONS = {
    "pinhole": project_pinhole,
    "radial1": project_radial1,
    "radial3": project_radial3,
    "brown": project_brown,
    "fisheye": project_fisheye,
    "spherical": project_spherical,
}


def apply_pose(pts3d, poses):
    """
    Expresses a set of 3d points in the camera frame

    Args:
        pts3d: Nx3 array with the world coordinates of N points
        poses: Nx6 array with the pose used for each point, [axis-angle rotation, translation]

    Returns:
        pts_cam: Nx3 array with the camera coordinates of each point, i.e. R @ X + t
    """
    return rotate_rodrigues(pts3d, poses[:, :3]) + poses[:, 3:6]


def project_pts3d(model, pts3d, poses, params, width, height):
    """
    Projects a set of 3d points according to a camera model

    Args:
        model: string, camera model tag
        pts3d: Nx3 array with the world coordinates of N points
        poses: Nx6 array with the pose used for each point
        params: NxK array with the intrinsic parameters used for each point (K may be 0)
        width, height: image size of the camera (only used by spherical cameras)

    Returns:
        pts2d: Nx2 array containing the 2d projections of pts3d
    """
    return PROJECTION_FUNCTIONS[model](apply_pose(pts3d, poses), params, width, height)


class Intrinsic:
    def __init__(self, model, width, height, params=None):
        """
        Camera intrinsic model, shared by all the views taken with the same camera

        Args:
            model: string, one of the tags in CAMERA_MODELS
            width, height: image size in pixels
            params (optional): vector with the parameters of the model, ordered as in CAMERA_MODELS[model]
        """
        self.model = model
        self.width = int(width)
        self.height = int(height)
        self.params = np.array([] if params is None else params, dtype=np.float64).ravel()

    def is_valid(self):
        return self.model in CAMERA_MODELS and self.params.size == len(CAMERA_MODELS[self.model])

    def get_params(self):
        return self.params.copy()

    def update_from_params(self, params):
        """
        Rebuilds the intrinsic model from a refined vector of parameters
        """
        params = np.asarray(params, dtype=np.float64).ravel()
        if params.size != len(CAMERA_MODELS.get(self.model, [])):
            raise Error("{} parameters given to a {} camera".format(params.size, self.model))
        self.params = params.copy()

    def subset_parameterization(self, intrinsics_opt):
        """
        Computes the indices of the parameters that remain constant given the groups of parameters to refine

        Args:
            intrinsics_opt: collection of flags in INTRINSIC_FLAGS, empty if no parameter is refined

        Returns:
            constant_indices: sorted list of the indices of params that are held fixed
        """
        names = CAMERA_MODELS.get(self.model, [])
        if not names:
            return []
        constant_indices = []
        if ADJUST_FOCAL_LENGTH not in intrinsics_opt:
            constant_indices.append(0)
        if ADJUST_PRINCIPAL_POINT not in intrinsics_opt:
            constant_indices.extend([1, 2])
        if ADJUST_DISTORTION not in intrinsics_opt:
            constant_indices.extend(range(3, len(names)))
        return constant_indices

    def project(self, pts_cam):
        """
        Projects a set of 3d points expressed in the camera frame to pixel coordinates
        """
        pts_cam = np.asarray(pts_cam, dtype=np.float64).reshape(-1, 3)
        params = np.tile(self.params, (pts_cam.shape[0], 1))
        return PROJECTION_FUNCTIONS[self.model](pts_cam, params, self.width, self.height)


class ReprojectionCostFunction:
    def __init__(self, intrinsic, observation, weight=0.0):
        """
        Residual of a single 2d observation: weight * (projection - observation)

        The residual is evaluated on 3 parameter blocks (intrinsics, pose, point) when the camera model has
        intrinsic parameters and on 2 parameter blocks (pose, point) otherwise
        A weight equal to 0.0 means unweighted residuals
        """
        self.model = intrinsic.model
        self.width, self.height = intrinsic.width, intrinsic.height
        self.observation = np.array(observation, dtype=np.float64).ravel()
        self.weight = float(weight) if weight != 0.0 else 1.0
        self.n_intrinsic_params = len(CAMERA_MODELS[self.model])
        self.n_parameter_blocks = 3 if self.n_intrinsic_params > 0 else 2

    def __call__(self, *parameter_blocks):
        if len(parameter_blocks) != self.n_parameter_blocks:
            raise Error("expected {} parameter blocks, got {}".format(self.n_parameter_blocks, len(parameter_blocks)))
        if self.n_parameter_blocks == 3:
            params, pose, X = parameter_blocks
        else:
            params, (pose, X) = np.array([]), parameter_blocks
        params = np.asarray(params, dtype=np.float64).reshape(1, -1)
        pose = np.asarray(pose, dtype=np.float64).reshape(1, 6)
        X = np.asarray(X, dtype=np.float64).reshape(1, 3)
        pt2d = project_pts3d(self.model, X, pose, params, self.width, self.height)[0]
        return self.weight * (pt2d - self.observation)


def reprojection_cost_function(intrinsic, observation, weight=0.0):
    """
    Creates the residual unit of an observation according to the camera model of the intrinsic
    Returns None if the camera model is not supported or its parameters do not match the model
    """
    if intrinsic.model not in PROJECTION_FUNCTIONS or not intrinsic.is_valid():
        return None
    return ReprojectionCostFunction(intrinsic, observation, weight)
