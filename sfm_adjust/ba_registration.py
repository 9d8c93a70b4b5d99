"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements the registration of a reconstructed scene to the reference frame of its motion priors
(e.g. GPS positions and compass orientations). A similarity transform between the camera centers and the
prior centers is estimated with a Least Median of Squares approach, so that a minority of wrong priors is tolerated.
The median residuals of the registration are later used as scale of the robust loss of the prior constraints.
"""

import numpy as np

from sfm_adjust import ba_metrics, ba_rotate
from sfm_adjust.loader import flush_print
from sfm_adjust.sfm_data import Pose3, Similarity3, apply_similarity

# minimal number of correspondences needed to fit a similarity
MIN_SAMPLES = 3

# minimal number of position priors needed to register the scene
MIN_PRIOR_CORRESPONDENCES = 4


class PriorRegistration:
    def __init__(self):
        """
        Output of the registration of a scene to its motion priors

        Attributes:
            usable: True if the priors can be used as constraints of the bundle adjustment
            sim: Similarity3 from the reconstruction frame to the prior frame
            sim_to_center: Similarity3 moving the centroid of the camera centers to the origin
            pose_center_initial_error: median distance between camera centers and priors before registration
            pose_center_robust_fitting_error: median distance between camera centers and priors after registration
            pose_rotation_robust_fitting_error: median squared distance between (cos, sin) yaw encodings
            n_center_pairs, n_rotation_pairs: number of position / orientation correspondences
        """
        self.usable = False
        self.sim = Similarity3()
        self.sim_to_center = Similarity3()
        self.pose_center_initial_error = np.inf
        self.pose_center_robust_fitting_error = 0.0
        self.pose_rotation_robust_fitting_error = 0.0
        self.n_center_pairs = 0
        self.n_rotation_pairs = 0


def encode_yaw(yaw):
    return np.array([np.cos(yaw), np.sin(yaw)])


def collect_prior_correspondences(sfm_data):
    """
    Collects the pairs (reconstruction, prior) of camera centers and yaw angles of all views with usable priors

    Returns:
        X_sfm, X_gps: Nx3 arrays with the camera centers and the corresponding prior centers
        R_sfm, R_gps: Mx2 arrays with the (cos, sin) encoding of the camera yaw and of the prior yaw
    """
    X_sfm, X_gps, R_sfm, R_gps = [], [], [], []
    for view in sfm_data.views_with_prior():
        prior, pose = view.prior, sfm_data.poses[view.id_pose]
        if prior.use_pose_center:
            X_sfm.append(pose.center.copy())
            X_gps.append(prior.pose_center.copy())
        if prior.use_pose_rotation:
            R_sfm.append(encode_yaw(ba_rotate.yaw_from_R(pose.rotation)))
            R_gps.append(encode_yaw(ba_rotate.yaw_from_R(prior.pose_rotation)))
    X_sfm, X_gps = np.array(X_sfm).reshape(-1, 3), np.array(X_gps).reshape(-1, 3)
    R_sfm, R_gps = np.array(R_sfm).reshape(-1, 2), np.array(R_gps).reshape(-1, 2)
    return X_sfm, X_gps, R_sfm, R_gps


def fit_similarity(X1, X2):
    """
    Closed form least squares similarity X2 = s * R @ X1 + t (Umeyama, 1991)

    Args:
        X1, X2: Nx3 arrays with N corresponding 3d points, N >= 3

    Returns:
        sim: Similarity3 instance, or None if the configuration of X1 is degenerate
    """
    mu1, mu2 = X1.mean(axis=0), X2.mean(axis=0)
    Y1, Y2 = X1 - mu1, X2 - mu2
    var1 = np.mean(np.sum(Y1 ** 2, axis=1))
    if not var1 > 1e-12:
        return None
    U, D, Vt = np.linalg.svd(Y2.T @ Y1 / X1.shape[0])
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1
    R = U @ S @ Vt
    scale = np.trace(np.diag(D) @ S) / var1
    if not (np.isfinite(scale) and scale > 0):
        return None
    t = mu2 - scale * R @ mu1
    return Similarity3.from_rts(R, t, scale)


def similarity_errors(sim, X1, X2):
    """
    Squared distances between the transformed points sim(X1) and X2
    """
    return np.sum((sim(X1) - X2) ** 2, axis=1)


def least_median_of_squares(X1, X2, outlier_ratio=0.5, min_proba=0.99, seed=0):
    """
    Robust estimation of a similarity between two sets of corresponding 3d points
    The candidate model fitted on a random minimal sample with the lowest median of squared residuals is kept

    Args:
        X1, X2: Nx3 arrays with N corresponding 3d points
        outlier_ratio (optional): expected proportion of outliers
        min_proba (optional): probability of drawing at least one outlier free sample
        seed (optional): seed of the random generator used to draw the samples

    Returns:
        best_sim: the best Similarity3, None if no model could be fitted
        best_median: median of squared residuals of best_sim, inf if no model could be fitted
    """
    n = X1.shape[0]
    if n < MIN_SAMPLES:
        return None, np.inf
    n_iter = int(np.ceil(np.log(1.0 - min_proba) / np.log(1.0 - (1.0 - outlier_ratio) ** MIN_SAMPLES)))
    rng = np.random.default_rng(seed)
    best_sim, best_median = None, np.inf
    for _ in range(n_iter):
        sample = rng.choice(n, MIN_SAMPLES, replace=False)
        sim = fit_similarity(X1[sample], X2[sample])
        if sim is None:
            continue
        median = ba_metrics.upper_median(similarity_errors(sim, X1, X2))
        if np.isfinite(median) and median < best_median:
            best_sim, best_median = sim, median
    return best_sim, best_median


def register_scene_to_priors(sfm_data, seed=0, verbose=False):
    """
    Registers the scene to the reference frame of the motion priors and moves it to the origin
    The scene is modified in place only if the registration is usable

    Args:
        sfm_data: SfMData instance
        seed (optional): seed of the Least Median of Squares sampling
        verbose (optional): boolean, print information about the registration

    Returns:
        reg: PriorRegistration instance
    """
    reg = PriorRegistration()
    X_sfm, X_gps, R_sfm, R_gps = collect_prior_correspondences(sfm_data)
    reg.n_center_pairs, reg.n_rotation_pairs = X_gps.shape[0], R_gps.shape[0]

    if reg.n_center_pairs < MIN_PRIOR_CORRESPONDENCES:
        flush_print("WARNING: Cannot use the motion prior, insufficient number of motion priors/poses")
        return reg

    reg.pose_center_initial_error = ba_metrics.upper_median(np.linalg.norm(X_sfm - X_gps, axis=1))
    sim, lmeds_median = least_median_of_squares(X_sfm, X_gps, seed=seed)
    if sim is None or not np.isfinite(lmeds_median):
        flush_print("WARNING: Cannot use the motion prior, the registration to the priors failed")
        return reg
    reg.usable = True
    reg.sim = sim

    # median residuals once the registration is applied
    reg.pose_center_robust_fitting_error = ba_metrics.upper_median(np.linalg.norm(sim(X_sfm) - X_gps, axis=1))
    if reg.n_rotation_pairs > 0:
        reg.pose_rotation_robust_fitting_error = ba_metrics.upper_median(np.sum((R_sfm - R_gps) ** 2, axis=1))

    apply_similarity(sim, sfm_data)

    # move the scene to the origin for numerical stability
    pose_centroid = sfm_data.pose_centers().mean(axis=0)
    reg.sim_to_center = Similarity3(Pose3(np.eye(3), pose_centroid), 1.0)
    apply_similarity(reg.sim_to_center, sfm_data, transform_priors=True)

    if verbose:
        flush_print("Registration to motion priors: {} position / {} orientation correspondences".format(
            reg.n_center_pairs, reg.n_rotation_pairs))
        to_print = [reg.pose_center_initial_error, reg.pose_center_robust_fitting_error, sim.scale]
        flush_print("    - median center error before / after: {:.4f} / {:.4f} (scale {:.4f})".format(*to_print))
    return reg


def compute_prior_fitting_statistics(sfm_data):
    """
    Computes the statistics of the distance between the scene and its motion priors

    Returns:
        stats: dict with keys "center" and "rotation", each one mapping to the min/max/mean/median statistics
               of the corresponding residuals, or None if there are not enough correspondences
    """
    X_sfm, X_gps, R_sfm, R_gps = collect_prior_correspondences(sfm_data)
    stats = {"center": None, "rotation": None}
    if X_gps.shape[0] >= MIN_PRIOR_CORRESPONDENCES:
        stats["center"] = ba_metrics.min_max_mean_median(np.linalg.norm(X_sfm - X_gps, axis=1))
    if R_gps.shape[0] >= MIN_PRIOR_CORRESPONDENCES:
        stats["rotation"] = ba_metrics.min_max_mean_median(np.sum((R_sfm - R_gps) ** 2, axis=1))
    return stats
