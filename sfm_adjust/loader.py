"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script consists of a series of functions dedicated to load and store data on the disk
Scenes are stored as .json files, all float values are written with full precision
"""

import json
import os

import numpy as np

from sfm_adjust import geo_utils
from sfm_adjust.cam_models import Intrinsic
from sfm_adjust.sfm_data import Landmark, MotionPrior, Observation, Pose3, SfMData, View


class Error(Exception):
    pass


def flush_print(input_string):
    print(input_string, flush=True)


def display_dict(d):
    """
    Displays the input dictionary d
    """
    max_k_len = len(sorted(d.keys(), key=lambda i: len(i))[::-1][0])
    for k in d.keys():
        print("    - {}:{}{}".format(k, "".join([" "] * (max_k_len - len(k) + 2)), d[k]))
    print("\n")


def get_time_in_hours_mins_secs(input_seconds):
    """
    Takes a float representing a time measure in seconds
    Returns a string with the time measure expressed in hours:minutes:seconds
    """
    hours, rem = divmod(input_seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    return "{:0>2}:{:0>2}:{:05.2f}".format(int(hours), int(minutes), seconds)


def save_dict_to_json(input_dict, output_json_fname):
    """
    Saves a python dictionary to a .json file
    """
    output_dir = os.path.dirname(output_json_fname)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_json_fname, "w") as f:
        json.dump(input_dict, f, indent=2)


def load_dict_from_json(input_json_fname):
    """
    Reads a .json file into a python dictionary
    """
    with open(input_json_fname) as f:
        output_dict = json.load(f)
    return output_dict


def landmarks_to_list(landmarks):
    output = []
    for landmark_id in sorted(landmarks):
        landmark = landmarks[landmark_id]
        obs = [{"id_view": k, "x": o.x.tolist(), "id_feat": o.id_feat} for k, o in sorted(landmark.obs.items())]
        output.append({"id": landmark_id, "X": landmark.X.tolist(), "obs": obs})
    return output


def landmarks_from_list(input_list):
    landmarks = {}
    for d in input_list:
        obs = {o["id_view"]: Observation(o["x"], o.get("id_feat", -1)) for o in d.get("obs", [])}
        landmarks[d["id"]] = Landmark(d["X"], obs)
    return landmarks


def prior_to_dict(prior):
    return {
        "use_pose_center": prior.use_pose_center,
        "pose_center": prior.pose_center.tolist(),
        "center_weight": prior.center_weight.tolist(),
        "use_pose_rotation": prior.use_pose_rotation,
        "pose_rotation": prior.pose_rotation.tolist(),
        "rotation_weight": prior.rotation_weight,
    }


def prior_from_dict(d, pose_center=None):
    """
    Builds a MotionPrior from its dictionary representation
    pose_center overrides the "pose_center" field, it is used for priors given in geodetic coordinates
    """
    if pose_center is None:
        pose_center = d.get("pose_center")
    return MotionPrior(
        pose_center=pose_center,
        center_weight=d.get("center_weight", [1.0, 1.0, 1.0]),
        pose_rotation=d.get("pose_rotation"),
        rotation_weight=d.get("rotation_weight", 1.0),
        use_pose_center=d.get("use_pose_center"),
        use_pose_rotation=d.get("use_pose_rotation"),
    )


def sfm_data_to_dict(sfm_data):
    """
    Converts a SfMData instance to a dictionary that can be written to a .json file
    """
    views = []
    for view_id in sorted(sfm_data.views):
        v = sfm_data.views[view_id]
        d = {
            "id_view": v.id_view,
            "id_pose": v.id_pose,
            "id_intrinsic": v.id_intrinsic,
            "width": v.width,
            "height": v.height,
            "s_img_path": v.s_img_path,
        }
        if v.has_prior():
            d["prior"] = prior_to_dict(v.prior)
        views.append(d)

    intrinsics = []
    for intrinsic_id in sorted(sfm_data.intrinsics):
        cam = sfm_data.intrinsics[intrinsic_id]
        d = {"id": intrinsic_id, "model": cam.model, "width": cam.width, "height": cam.height}
        d["params"] = cam.params.tolist()
        intrinsics.append(d)

    poses = []
    for pose_id in sorted(sfm_data.poses):
        pose = sfm_data.poses[pose_id]
        poses.append({"id": pose_id, "rotation": pose.rotation.tolist(), "center": pose.center.tolist()})

    return {
        "s_root_path": sfm_data.s_root_path,
        "views": views,
        "intrinsics": intrinsics,
        "poses": poses,
        "structure": landmarks_to_list(sfm_data.structure),
        "control_points": landmarks_to_list(sfm_data.control_points),
    }


def sfm_data_from_dict(d):
    """
    Builds a SfMData instance from its dictionary representation

    Motion priors may specify the camera center in geodetic coordinates with the field "pose_center_lla"
    (latitude, longitude, altitude), in which case it is converted to a metric frame according to the
    field "gps_to_xyz_method" of the scene ("ecef" by default, or "utm")
    """
    sfm_data = SfMData(d.get("s_root_path", ""))

    for c in d.get("intrinsics", []):
        sfm_data.intrinsics[c["id"]] = Intrinsic(c["model"], c["width"], c["height"], c.get("params", []))

    for p in d.get("poses", []):
        sfm_data.poses[p["id"]] = Pose3(p["rotation"], p["center"])

    # geodetic priors are converted all at once so that they share the same utm zone
    views = d.get("views", [])
    lla_view_ids = [v["id_view"] for v in views if "prior" in v and "pose_center_lla" in v["prior"]]
    lla_centers = {}
    if len(lla_view_ids) > 0:
        lla = np.array([v["prior"]["pose_center_lla"] for v in views if v["id_view"] in lla_view_ids])
        xyz = geo_utils.lla_to_xyz(lla[:, 0], lla[:, 1], lla[:, 2], method=d.get("gps_to_xyz_method", "ecef"))
        lla_centers = dict(zip(lla_view_ids, xyz))

    for v in views:
        prior = None
        if "prior" in v:
            prior = prior_from_dict(v["prior"], pose_center=lla_centers.get(v["id_view"]))
        view = View(v["id_view"], v["id_pose"], v["id_intrinsic"], v["width"], v["height"],
                    v.get("s_img_path", ""), prior)
        if view.id_view in sfm_data.views:
            raise Error("duplicated view id {}".format(view.id_view))
        sfm_data.views[view.id_view] = view

    sfm_data.structure = landmarks_from_list(d.get("structure", []))
    sfm_data.control_points = landmarks_from_list(d.get("control_points", []))
    return sfm_data


def save_sfm_data(sfm_data, output_json_fname):
    save_dict_to_json(sfm_data_to_dict(sfm_data), output_json_fname)


def load_sfm_data(input_json_fname):
    return sfm_data_from_dict(load_dict_from_json(input_json_fname))
