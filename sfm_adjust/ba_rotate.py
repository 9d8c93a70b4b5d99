"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements a series of functions for the representation of rotations in the 3d space
"""

import numpy as np
from scipy.spatial.transform import Rotation

# below this angle the axis of a rotation vector is undefined and the rotation is treated as the identity
ANGLE_EPS = 1e-12

# tolerance used to detect the gimbal lock of the XYZ euler decomposition
GIMBAL_LOCK_EPS = 1e-6


def axis_angle_from_R(R):
    """
    Convert a 3x3 rotation matrix R to the axis-angle representation
    The output is a rotation vector, i.e. the rotation axis scaled by the rotation angle (radians)
    """
    return Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_rotvec()


def axis_angle_to_R(axis_angle):
    """
    Recover the 3x3 rotation matrix R from the axis-angle representation
    Accepts a single rotation vector or an Nx3 array of rotation vectors (then returns Nx3x3)
    """
    return Rotation.from_rotvec(np.asarray(axis_angle, dtype=np.float64)).as_matrix()


def rotate_rodrigues(pts, axis_angle):
    """
    Rotates a set of 3d points using axis-angle rotation vectors by means of the Rodrigues formula

    Args:
        pts: Nx3 array with N (x,y,z) coordinates to rotate
        axis_angle: Nx3 array with the axis_angle vectors that will be used to rotate each point

    Returns:
        ptsR: Nx3 array with the rotated 3d points
    """
    theta = np.linalg.norm(axis_angle, axis=1)[:, np.newaxis]
    null_rotation = theta[:, 0] < ANGLE_EPS
    safe_theta = np.where(theta < ANGLE_EPS, 1.0, theta)
    v = axis_angle / safe_theta
    dot = np.sum(pts * v, axis=1)[:, np.newaxis]
    cos_theta, sin_theta = np.cos(theta), np.sin(theta)
    ptsR = cos_theta * pts + sin_theta * np.cross(v, pts) + dot * (1 - cos_theta) * v
    if np.any(null_rotation):
        # first order approximation of the rotation
        ptsR[null_rotation] = pts[null_rotation] + np.cross(axis_angle[null_rotation], pts[null_rotation])
    return ptsR


def rotate_rodrigues_inverse(pts, axis_angle):
    """
    Applies the inverse rotation of rotate_rodrigues, i.e. R^T @ pts
    """
    return rotate_rodrigues(pts, -axis_angle)


def euler_angles_xyz_from_R(R):
    """
    Converts a 3x3 rotation matrix R = Rx @ Ry @ Rz to the euler angles (X, Y, Z)

    Y is unique in [-pi/2, pi/2]. When |R[0, 2]| is 1 (gimbal lock) there are infinite choices of X and Z,
    the solution X = atan2(R[2, 1], R[1, 1]), Z = 0 is returned in that case
    """
    R = np.asarray(R)
    Y = np.arcsin(np.clip(R[0, 2], -1.0, 1.0))
    if abs(abs(R[0, 2]) - 1.0) < GIMBAL_LOCK_EPS:
        X = np.arctan2(R[2, 1], R[1, 1])
        Z = 0.0
    else:
        X = np.arctan2(-R[1, 2], R[2, 2])
        Z = np.arctan2(-R[0, 1], R[0, 0])
    return X, Y, Z


def euler_angles_xyz_to_R(X, Y, Z):
    """
    Recover the 3x3 rotation matrix R = Rx @ Ry @ Rz from the euler angles (X, Y, Z)
    """
    t = np.float64
    Rx = np.array([[1, 0, 0], [0, np.cos(X), -np.sin(X)], [0, np.sin(X), np.cos(X)]], dtype=t)
    Ry = np.array([[np.cos(Y), 0, np.sin(Y)], [0, 1, 0], [-np.sin(Y), 0, np.cos(Y)]], dtype=t)
    Rz = np.array([[np.cos(Z), -np.sin(Z), 0], [np.sin(Z), np.cos(Z), 0], [0, 0, 1]], dtype=t)
    return Rx @ Ry @ Rz


def yaw_from_R(R):
    """
    Yaw angle (radians) of a rotation matrix, i.e. the Z angle of the XYZ euler decomposition
    """
    return euler_angles_xyz_from_R(R)[2]


def yaw_from_axis_angles(axis_angles):
    """
    Vectorized yaw extraction from an Nx3 array of rotation vectors
    Follows the same conventions as euler_angles_xyz_from_R, gimbal lock included
    """
    Rs = axis_angle_to_R(axis_angles).reshape(-1, 3, 3)
    gimbal_lock = np.abs(np.abs(Rs[:, 0, 2]) - 1.0) < GIMBAL_LOCK_EPS
    yaw = np.arctan2(-Rs[:, 0, 1], Rs[:, 0, 0])
    yaw[gimbal_lock] = 0.0
    return yaw
