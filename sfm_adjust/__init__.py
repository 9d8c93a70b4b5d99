import os

from sfm_adjust import ba_metrics, ba_pipeline, loader
from sfm_adjust.ba_core import BundleAdjustmentOptions

__version__ = "0.1.0dev"


def main(config_path, histogram_path=None):
    """
    Runs the bundle adjustment of the scene described by a .json configuration file

    The configuration must contain
        "input_sfm_data": path to the .json file of the input scene
        "output_sfm_data": path where the refined scene will be written
    and optionally
        "optimize_options": dict with the fields of ba_pipeline.OptimizeOptions
        "ba_options": dict with "verbose", "multithreaded" and any key of ba_core.init_optimization_config
        "histogram": path of a .png figure with the reprojection errors before and after bundle adjustment

    histogram_path overrides the "histogram" field of the configuration

    Returns:
        True if the bundle adjustment succeeded and the refined scene was written, False otherwise
    """
    config = loader.load_dict_from_json(config_path)
    for k in ["input_sfm_data", "output_sfm_data"]:
        if k not in config:
            raise ba_pipeline.Error("{} is missing in {}".format(k, config_path))

    sfm_data = loader.load_sfm_data(config["input_sfm_data"])
    optimize_options = ba_pipeline.OptimizeOptions.from_dict(config.get("optimize_options", {}))
    ba_options = BundleAdjustmentOptions(**config.get("ba_options", {}))

    ba = ba_pipeline.BundleAdjustment(ba_options)
    success = ba.adjust(sfm_data, optimize_options)
    if not success:
        loader.flush_print("Bundle adjustment failed, {} was not written".format(config["output_sfm_data"]))
        return False

    loader.save_sfm_data(sfm_data, config["output_sfm_data"])
    histogram_path = config.get("histogram") if histogram_path is None else histogram_path
    if histogram_path is not None and ba.err_init.size > 0:
        os.makedirs(os.path.dirname(os.path.abspath(histogram_path)), exist_ok=True)
        ba_metrics.save_histogram_of_errors(histogram_path, ba.err_init, ba.err_ba)
    return True
