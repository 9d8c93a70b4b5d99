"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements the containers of a Structure-from-Motion scene:
views (with optional motion priors), poses, intrinsics, landmarks and ground control points
"""

import numpy as np


class Pose3:
    def __init__(self, rotation=None, center=None):
        """
        Rigid transform of a camera, mapping world points to the camera frame as X_cam = R (X - C)

        Args:
            rotation (optional): 3x3 rotation matrix R, identity by default
            center (optional): 3 valued vector with the camera center C, zero by default
        """
        self.rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        self.center = np.zeros(3) if center is None else np.array(center, dtype=np.float64).ravel()

    @property
    def translation(self):
        return -self.rotation @ self.center

    def __call__(self, pts3d):
        """
        Apply the pose to a 3d point or an Nx3 array of 3d points
        """
        pts3d = np.asarray(pts3d, dtype=np.float64)
        return (pts3d - self.center) @ self.rotation.T

    def inverse(self):
        return Pose3(self.rotation.T, -self.rotation @ self.center)

    def copy(self):
        return Pose3(self.rotation.copy(), self.center.copy())


class Similarity3:
    def __init__(self, pose=None, scale=1.0):
        """
        Similarity transform sim(X) = scale * R (X - C), where (R, C) is given by a Pose3
        """
        self.pose = Pose3() if pose is None else pose
        self.scale = float(scale)

    @classmethod
    def from_rts(cls, R, t, scale):
        """
        Build the similarity X' = scale * R @ X + t
        """
        R = np.asarray(R, dtype=np.float64)
        center = -R.T @ np.asarray(t, dtype=np.float64) / scale
        return cls(Pose3(R, center), scale)

    def __call__(self, pts3d):
        return self.scale * self.pose(pts3d)

    def apply_to_pose(self, pose):
        """
        Express a camera pose in the frame defined by the similarity
        """
        return Pose3(pose.rotation @ self.pose.rotation.T, self(pose.center))

    def inverse(self):
        # X = R^T X' / s + C
        R_inv = self.pose.rotation.T
        t_inv = self.pose.center
        return Similarity3.from_rts(R_inv, t_inv, 1.0 / self.scale)


class MotionPrior:
    def __init__(self, pose_center=None, center_weight=(1.0, 1.0, 1.0), pose_rotation=None, rotation_weight=1.0,
                 use_pose_center=None, use_pose_rotation=None):
        """
        External measurement of the pose of a view (e.g. GPS position and compass/IMU orientation)

        Args:
            pose_center (optional): 3 valued vector with the camera center in the prior reference frame
            center_weight (optional): 3 valued vector with the weight of each axis of the position prior
            pose_rotation (optional): 3x3 rotation matrix with the prior orientation of the camera
            rotation_weight (optional): scalar weight of the orientation prior
            use_pose_center (optional): flag to use the position prior, True if pose_center is given
            use_pose_rotation (optional): flag to use the orientation prior, True if pose_rotation is given
        """
        self.pose_center = np.zeros(3) if pose_center is None else np.array(pose_center, dtype=np.float64).ravel()
        self.center_weight = np.array(center_weight, dtype=np.float64).ravel()
        self.pose_rotation = np.eye(3) if pose_rotation is None else np.array(pose_rotation, dtype=np.float64)
        self.rotation_weight = float(rotation_weight)
        self.use_pose_center = (pose_center is not None) if use_pose_center is None else bool(use_pose_center)
        self.use_pose_rotation = (pose_rotation is not None) if use_pose_rotation is None else bool(use_pose_rotation)


class View:
    def __init__(self, id_view, id_pose, id_intrinsic, width, height, s_img_path="", prior=None):
        """
        An image of the scene

        Args:
            id_view: unique identifier of the view
            id_pose: identifier of the pose of the view (several views may share a pose)
            id_intrinsic: identifier of the camera intrinsic of the view
            width, height: image size in pixels
            s_img_path (optional): image filename, relative to the root path of the scene
            prior (optional): MotionPrior instance, None for views without motion prior
        """
        self.id_view = id_view
        self.id_pose = id_pose
        self.id_intrinsic = id_intrinsic
        self.width = int(width)
        self.height = int(height)
        self.s_img_path = s_img_path
        self.prior = prior

    def has_prior(self):
        return self.prior is not None


class Observation:
    def __init__(self, x, id_feat=-1):
        self.x = np.array(x, dtype=np.float64).ravel()
        self.id_feat = id_feat


class Landmark:
    def __init__(self, X, obs=None):
        """
        A 3d point and its 2d observations

        Args:
            X: 3 valued vector with the 3d coordinates of the point
            obs (optional): dict mapping a view id to the Observation of the point in that view
        """
        self.X = np.array(X, dtype=np.float64).ravel()
        self.obs = {} if obs is None else obs


class SfMData:
    def __init__(self, s_root_path=""):
        self.s_root_path = s_root_path
        self.views = {}
        self.poses = {}
        self.intrinsics = {}
        self.structure = {}
        self.control_points = {}

    def is_pose_and_intrinsic_defined(self, view):
        """
        Check that a view is linked to an existing pose and a valid intrinsic
        """
        if view.id_pose not in self.poses or view.id_intrinsic not in self.intrinsics:
            return False
        return self.intrinsics[view.id_intrinsic].is_valid()

    def views_with_prior(self):
        """
        Yields the views carrying a motion prior and linked to a defined pose and intrinsic
        """
        for view_id in sorted(self.views):
            view = self.views[view_id]
            if view.has_prior() and self.is_pose_and_intrinsic_defined(view):
                yield view

    def pose_centers(self):
        return np.array([self.poses[k].center for k in sorted(self.poses)]).reshape(-1, 3)


def apply_similarity(sim, sfm_data, transform_priors=False):
    """
    Apply a similarity transform to all poses, landmarks and control points of a scene

    Args:
        sim: Similarity3 instance
        sfm_data: SfMData instance, modified in place
        transform_priors (optional): if True, the pose centers of the motion priors are transformed too
    """
    for pose_id in sfm_data.poses:
        sfm_data.poses[pose_id] = sim.apply_to_pose(sfm_data.poses[pose_id])
    for landmark in sfm_data.structure.values():
        landmark.X[:] = sim(landmark.X)
    for landmark in sfm_data.control_points.values():
        landmark.X[:] = sim(landmark.X)
    if transform_priors:
        for view in sfm_data.views.values():
            if view.has_prior():
                view.prior.pose_center = sim(view.prior.pose_center)


class SceneSnapshot:
    def __init__(self, sfm_data):
        """
        Copy of the values of a scene that a bundle adjustment may modify: poses, intrinsic parameters,
        coordinates of the landmarks and control points, and pose centers of the motion priors
        """
        self.poses = {k: (pose, pose.rotation.copy(), pose.center.copy()) for k, pose in sfm_data.poses.items()}
        self.intrinsics = {k: (intrinsic, intrinsic.params.copy()) for k, intrinsic in sfm_data.intrinsics.items()}
        points = list(sfm_data.structure.values()) + list(sfm_data.control_points.values())
        self.points = [(landmark, landmark.X.copy()) for landmark in points]
        self.prior_centers = [
            (view.prior, view.prior.pose_center.copy()) for view in sfm_data.views.values() if view.has_prior()
        ]

    def restore(self, sfm_data):
        """
        Puts the saved values back into the scene, 3d point arrays are restored in place
        """
        for pose_id, (pose, rotation, center) in self.poses.items():
            pose.rotation, pose.center = rotation.copy(), center.copy()
            sfm_data.poses[pose_id] = pose
        for intrinsic_id, (intrinsic, params) in self.intrinsics.items():
            intrinsic.params = params.copy()
            sfm_data.intrinsics[intrinsic_id] = intrinsic
        for landmark, X in self.points:
            landmark.X[:] = X
        for prior, pose_center in self.prior_centers:
            prior.pose_center = pose_center.copy()
