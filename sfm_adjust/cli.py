import argparse
import sys

from sfm_adjust import main as run_main


def main():

    parser = argparse.ArgumentParser(description="Bundle Adjustment of Structure-from-Motion scenes")

    parser.add_argument(
        "config",
        metavar="config.json",
        help="path to a json file containing the input/output scenes and the options of the bundle adjustment.",
    )

    parser.add_argument(
        "--histogram",
        metavar="errors.png",
        default=None,
        help="write a figure with the reprojection errors before and after bundle adjustment.",
    )

    # parse command line arguments
    args = parser.parse_args()

    return 0 if run_main(args.config, histogram_path=args.histogram) else 1


if __name__ == "__main__":
    sys.exit(main())
