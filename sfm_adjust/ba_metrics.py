"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements a series of functions dedicated to measure and display the quality of the fit
"""

import matplotlib.pyplot as plt
import numpy as np

from sfm_adjust.loader import flush_print


def upper_median(values):
    """
    Median taken as the upper middle element of the sorted values
    """
    values = np.sort(np.asarray(values).ravel())
    return values[values.size // 2]


def min_max_mean_median(values):
    """
    Computes the min, max, mean and median of a vector of values, the median being the upper median
    """
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.size == 0:
        return None
    return {
        "min": float(np.min(values)),
        "max": float(np.max(values)),
        "mean": float(np.mean(values)),
        "median": float(upper_median(values)),
    }


def print_statistics(stats, title):
    """
    Displays the output of min_max_mean_median
    """
    flush_print(title)
    if stats is None:
        flush_print("    - no values")
        return
    for k in ["min", "max", "mean", "median"]:
        flush_print("    - {}: {:.6f}".format(k, stats[k]))


def rmse_from_cost(cost, n_residuals):
    """
    Approximated root mean squared error sqrt(cost / n_residuals), where cost = 0.5 * sum(rho(r^2)) is the
    robustified cost reported by the solver over n_residuals scalar residuals
    """
    if n_residuals == 0:
        return 0.0
    return float(np.sqrt(cost / n_residuals))


def save_histogram_of_errors(img_path, err_init, err_ba, plot=False):
    """
    Writes a png image with the histogram of reprojection errors before and after bundle adjustment

    Args:
        img_path: string, filename of the png image that will be written on the disk
        err_init: vector with the reprojection error of each 2d observation before bundle adjustment
        err_ba: vector with the reprojection error of each 2d observation after bundle adjustment
        plot (optional): plot a matplotlib figure instead of saving output image
    """
    err_range = (min(err_init.min(), err_ba.min()), max(err_init.max(), err_ba.max()))
    plt.figure(figsize=(12, 3))
    plt.subplot(1, 2, 1)
    plt.hist(err_init, bins=40, range=err_range)
    plt.title("Before BA")
    plt.ylabel("Number of observations")
    plt.xlabel("Reprojection error (pixel units)")

    plt.subplot(1, 2, 2)
    plt.hist(err_ba, bins=40, range=err_range)
    plt.title("After BA")
    plt.ylabel("Number of observations")
    plt.xlabel("Reprojection error (pixel units)")
    if plot:
        plt.show()
    else:
        plt.savefig(img_path, bbox_inches="tight")
    plt.close()
