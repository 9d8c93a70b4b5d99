import os
import sys

import numpy as np

import sfm_adjust
from sfm_adjust import ba_params, ba_problem, cli, loader
from sfm_adjust.ba_core import BundleAdjustmentOptions, run_ba_optimization
from sfm_adjust.ba_pipeline import BundleAdjustment, ControlPointOptions, OptimizeOptions, adjust
from sfm_adjust.ba_registration import PriorRegistration, register_scene_to_priors
from sfm_adjust.ba_rotate import euler_angles_xyz_to_R
from sfm_adjust.cam_models import Intrinsic
from sfm_adjust.sfm_data import Landmark, MotionPrior, Observation, Pose3, SfMData, View

CAMERA_PARAMS = {
    "pinhole": [800.0, 500.0, 400.0],
    "radial1": [800.0, 500.0, 400.0, -0.05],
    "radial3": [800.0, 500.0, 400.0, -0.05, 0.01, -0.001],
    "brown": [800.0, 500.0, 400.0, -0.05, 0.01, -0.001, 0.001, -0.001],
    "fisheye": [800.0, 500.0, 400.0, 0.01, -0.005, 0.001, -0.0005],
    "spherical": [],
}


def look_at(center, target=np.zeros(3)):
    z = (target - center) / np.linalg.norm(target - center)
    x = np.cross([0.0, 1.0, 0.0], z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    return np.vstack((x, y, z))


def make_scene(model="pinhole", n_views=5, n_pts=40, seed=0):
    """
    Synthetic scene with noise free observations of a cloud of points seen by cameras on an arc
    """
    rng = np.random.default_rng(seed)
    sfm_data = SfMData()
    sfm_data.intrinsics[0] = Intrinsic(model, 1000, 800, CAMERA_PARAMS[model])
    for i, a in enumerate(np.linspace(-0.4, 0.4, n_views)):
        C = np.array([6.0 * np.sin(a), 0.3 * i, -6.0 * np.cos(a)])
        sfm_data.poses[i] = Pose3(look_at(C), C)
        sfm_data.views[i] = View(i, i, 0, 1000, 800, "{:03d}.jpg".format(i))
    cam = sfm_data.intrinsics[0]
    for j, X in enumerate(rng.uniform(-1.0, 1.0, (n_pts, 3))):
        obs = {i: Observation(cam.project(sfm_data.poses[i](X))[0], j) for i in sfm_data.views}
        sfm_data.structure[j] = Landmark(X, obs)
    return sfm_data


def perturb_poses(sfm_data, seed=1):
    rng = np.random.default_rng(seed)
    for pose in sfm_data.poses.values():
        pose.rotation = euler_angles_xyz_to_R(*rng.normal(0.0, 0.01, 3)) @ pose.rotation
        pose.center = pose.center + rng.normal(0.0, 0.05, 3)


def solver_options(**kwargs):
    return BundleAdjustmentOptions(verbose=False, multithreaded=False, **kwargs)


def test_adjust_poses_all_camera_models():
    for model in CAMERA_PARAMS:
        gt = make_scene(model)
        sfm_data = make_scene(model)
        perturb_poses(sfm_data)
        options = OptimizeOptions(extrinsics_opt="ADJUST_ALL", intrinsics_opt="NONE", structure_opt="NONE")
        ba = BundleAdjustment(solver_options())
        assert ba.adjust(sfm_data, options)
        assert ba.summary.final_cost < 1e-8
        for i in gt.poses:
            assert np.allclose(sfm_data.poses[i].rotation, gt.poses[i].rotation, atol=1e-5)
            assert np.allclose(sfm_data.poses[i].center, gt.poses[i].center, atol=1e-4)
        # failed to recover the poses of the cameras


def test_adjust_intrinsics():
    for model in ["pinhole", "radial1", "radial3", "brown", "fisheye"]:
        gt = make_scene(model)
        sfm_data = make_scene(model)
        sfm_data.intrinsics[0].params[:3] += [15.0, -4.0, 3.0]
        options = OptimizeOptions(extrinsics_opt="NONE", intrinsics_opt="ADJUST_ALL", structure_opt="NONE")
        ba = BundleAdjustment(solver_options(linear_solver_type="dense_schur"))
        assert ba.adjust(sfm_data, options)
        assert np.max(ba.err_ba) < 1e-3
        assert np.allclose(sfm_data.intrinsics[0].params[:3], gt.intrinsics[0].params[:3], atol=1e-2)
        # failed to recover focal length and principal point


def test_adjust_intrinsics_subset():
    sfm_data = make_scene("radial1")
    sfm_data.intrinsics[0].params[:] = [810.0, 505.0, 395.0, -0.05]
    options = OptimizeOptions(extrinsics_opt="NONE", intrinsics_opt=["ADJUST_FOCAL_LENGTH"], structure_opt="NONE")
    assert adjust(sfm_data, options, solver_options())
    params = sfm_data.intrinsics[0].params
    # the principal point is held fixed
    assert params[1] == 505.0 and params[2] == 395.0
    assert params[0] != 810.0


def test_adjust_rotation_only():
    gt = make_scene()
    sfm_data = make_scene()
    # perturbed rotations keeping the translations, so that the ground truth is reachable
    for pose in sfm_data.poses.values():
        t = pose.translation
        pose.rotation = euler_angles_xyz_to_R(0.005, -0.003, 0.004) @ pose.rotation
        pose.center = -pose.rotation.T @ t
    centers = {i: pose.center.copy() for i, pose in sfm_data.poses.items()}
    options = OptimizeOptions(extrinsics_opt="ADJUST_ROTATION", intrinsics_opt="NONE", structure_opt="NONE")
    assert adjust(sfm_data, options, solver_options())
    for i, pose in sfm_data.poses.items():
        # only the rotation is written back
        assert np.array_equal(pose.center, centers[i])
        assert np.allclose(pose.rotation, gt.poses[i].rotation, atol=1e-5)


def test_adjust_translation_only():
    gt = make_scene()
    sfm_data = make_scene()
    rng = np.random.default_rng(4)
    for pose in sfm_data.poses.values():
        pose.center = pose.center + rng.normal(0.0, 0.05, 3)
    rotations = {i: pose.rotation.copy() for i, pose in sfm_data.poses.items()}
    options = OptimizeOptions(extrinsics_opt="ADJUST_TRANSLATION", intrinsics_opt="NONE", structure_opt="NONE")
    assert adjust(sfm_data, options, solver_options())
    for i, pose in sfm_data.poses.items():
        # only the center is written back
        assert np.array_equal(pose.rotation, rotations[i])
        assert np.allclose(pose.center, gt.poses[i].center, atol=1e-4)


def test_fixed_extrinsics_are_bit_identical():
    sfm_data = make_scene("radial3")
    rng = np.random.default_rng(3)
    for landmark in sfm_data.structure.values():
        landmark.X += rng.normal(0.0, 0.01, 3)
    poses_before = {i: (p.rotation.copy(), p.center.copy()) for i, p in sfm_data.poses.items()}
    X_before = np.array([l.X.copy() for l in sfm_data.structure.values()])

    options = OptimizeOptions(extrinsics_opt="NONE", intrinsics_opt="NONE", structure_opt="ADJUST")
    ba = BundleAdjustment(solver_options())
    assert ba.adjust(sfm_data, options)
    for i, (R, C) in poses_before.items():
        assert np.array_equal(sfm_data.poses[i].rotation, R)
        assert np.array_equal(sfm_data.poses[i].center, C)
    # the landmarks were refined in place
    X_after = np.array([l.X for l in sfm_data.structure.values()])
    assert not np.array_equal(X_before, X_after)
    assert ba.summary.final_cost < ba.summary.initial_cost


def test_multithreaded_residuals():
    sfm_data = make_scene("brown", n_pts=30)
    options = OptimizeOptions(structure_opt="NONE")
    graph_1, params_opt = ba_problem.build_residual_graph(sfm_data, options, n_threads=1)
    graph_4, _ = ba_problem.build_residual_graph(sfm_data, options, n_threads=4, min_observations_per_thread=7)
    assert len(graph_4.chunks) > len(graph_1.chunks)
    v = params_opt + 1e-3
    assert np.allclose(graph_1.fun(v), graph_4.fun(v))
    A = graph_1.build_jacobian_sparsity()
    assert A.shape == (2 * 5 * 30, graph_1.arena.n_params)


def test_control_points():
    sfm_data = make_scene()
    cam = sfm_data.intrinsics[0]
    X_gcp = np.array([0.2, 0.1, -0.3])
    obs = {i: Observation(cam.project(sfm_data.poses[i](X_gcp))[0]) for i in [0, 2, 4]}
    sfm_data.control_points[0] = Landmark(X_gcp, obs)
    sfm_data.control_points[1] = Landmark([1.0, 2.0, 3.0])

    options = OptimizeOptions(control_point_opt=ControlPointOptions(use_control_points=True, weight=20.0))
    graph, _ = ba_problem.build_residual_graph(sfm_data, options)
    assert graph.n_blocks["control_point"] == 3
    assert graph.arena.is_constant(("control_point", 0))
    assert not graph.arena.has_parameter_block(("control_point", 1))

    perturb_poses(sfm_data)
    options.intrinsics_opt, options.structure_opt = "NONE", "NONE"
    assert adjust(sfm_data, options, solver_options())
    # ground control points with or without observations do not move
    assert np.array_equal(sfm_data.control_points[1].X, [1.0, 2.0, 3.0])
    assert np.array_equal(sfm_data.control_points[0].X, X_gcp)


def test_invalid_scenes():
    # observation in a view with an undefined pose
    sfm_data = make_scene()
    sfm_data.views[7] = View(7, 7, 0, 1000, 800)
    sfm_data.structure[0].obs[7] = Observation([10.0, 10.0])
    assert not adjust(sfm_data, OptimizeOptions(), solver_options())

    # unsupported camera model
    sfm_data = make_scene()
    sfm_data.intrinsics[0] = Intrinsic("orthographic", 1000, 800, [1.0])
    poses_before = {i: p.rotation.copy() for i, p in sfm_data.poses.items()}
    assert not adjust(sfm_data, OptimizeOptions(), solver_options())
    for i, R in poses_before.items():
        assert np.array_equal(sfm_data.poses[i].rotation, R)

    # invalid policy
    assert not adjust(make_scene(), OptimizeOptions(extrinsics_opt="ADJUST_SCALE"), solver_options())


def add_priors(sfm_data, offset, noise=0.01, view_ids=None, seed=2):
    rng = np.random.default_rng(seed)
    view_ids = sorted(sfm_data.views) if view_ids is None else view_ids
    for i in view_ids:
        view = sfm_data.views[i]
        center = sfm_data.poses[view.id_pose].center + offset + rng.normal(0.0, noise, 3)
        view.prior = MotionPrior(pose_center=center, pose_rotation=sfm_data.poses[view.id_pose].rotation)


def test_registration_needs_four_priors():
    sfm_data = make_scene()
    add_priors(sfm_data, np.array([10.0, -5.0, 3.0]), view_ids=[0, 1, 2])
    poses_before = {i: (p.rotation.copy(), p.center.copy()) for i, p in sfm_data.poses.items()}

    reg = register_scene_to_priors(sfm_data)
    assert not reg.usable
    for i, (R, C) in poses_before.items():
        assert np.array_equal(sfm_data.poses[i].rotation, R)
        assert np.array_equal(sfm_data.poses[i].center, C)

    # the adjustment goes on without prior constraints
    options = OptimizeOptions(use_motion_priors_opt=True, intrinsics_opt="NONE", structure_opt="NONE")
    ba = BundleAdjustment(solver_options())
    assert ba.adjust(sfm_data, options)
    assert not ba.registration.usable
    assert ba.statistics is None


def test_registration_to_translated_priors():
    sfm_data = make_scene()
    offset = np.array([10.0, -5.0, 3.0])
    add_priors(sfm_data, offset)

    reg = register_scene_to_priors(make_scene_copy(sfm_data))
    assert reg.usable
    assert reg.n_center_pairs == 5 and reg.n_rotation_pairs == 5
    assert reg.pose_center_robust_fitting_error < reg.pose_center_initial_error
    assert reg.pose_center_robust_fitting_error < 0.1
    assert np.isclose(reg.sim.scale, 1.0, atol=1e-2)

    options = OptimizeOptions(use_motion_priors_opt=True, intrinsics_opt="NONE", structure_opt="ADJUST")
    ba = BundleAdjustment(solver_options())
    assert ba.adjust(sfm_data, options)
    assert ba.registration.usable
    # the scene is expressed in the frame of the priors
    center_stats = ba.statistics["center"]
    assert center_stats["median"] < 0.1
    for view in sfm_data.views.values():
        assert np.linalg.norm(sfm_data.poses[view.id_pose].center - view.prior.pose_center) < 0.1


def scene_state(sfm_data):
    poses = {i: (p.rotation.copy(), p.center.copy()) for i, p in sfm_data.poses.items()}
    intrinsics = {i: c.params.copy() for i, c in sfm_data.intrinsics.items()}
    points = {i: l.X.copy() for i, l in sfm_data.structure.items()}
    priors = {i: v.prior.pose_center.copy() for i, v in sfm_data.views.items() if v.has_prior()}
    return poses, intrinsics, points, priors


def assert_same_state(sfm_data, state):
    poses, intrinsics, points, priors = state
    for i, (R, C) in poses.items():
        assert np.array_equal(sfm_data.poses[i].rotation, R)
        assert np.array_equal(sfm_data.poses[i].center, C)
    for i, params in intrinsics.items():
        assert np.array_equal(sfm_data.intrinsics[i].params, params)
    for i, X in points.items():
        assert np.array_equal(sfm_data.structure[i].X, X)
    for i, C in priors.items():
        assert np.array_equal(sfm_data.views[i].prior.pose_center, C)


def test_unusable_solution_is_not_applied():
    sfm_data = make_scene("radial1")
    perturb_poses(sfm_data)
    # non finite residuals at the initial point
    sfm_data.structure[3].obs[2].x[:] = np.nan
    state = scene_state(sfm_data)

    ba = BundleAdjustment(solver_options())
    assert not ba.adjust(sfm_data, OptimizeOptions())
    assert not ba.summary.is_solution_usable()
    assert_same_state(sfm_data, state)


def test_failed_adjustment_with_priors_restores_scene():
    # the solution is not usable once the scene is registered to its priors
    sfm_data = make_scene()
    add_priors(sfm_data, np.array([100.0, -50.0, 30.0]))
    perturb_poses(sfm_data)
    sfm_data.structure[0].obs[1].x[:] = np.nan
    state = scene_state(sfm_data)

    ba = BundleAdjustment(solver_options())
    assert not ba.adjust(sfm_data, OptimizeOptions(use_motion_priors_opt=True))
    assert ba.registration.usable
    assert_same_state(sfm_data, state)

    # unsupported camera model in one of the views
    sfm_data = make_scene()
    add_priors(sfm_data, np.array([100.0, -50.0, 30.0]))
    sfm_data.intrinsics[1] = Intrinsic("orthographic", 1000, 800, [1.0])
    sfm_data.views[4].id_intrinsic = 1
    state = scene_state(sfm_data)

    ba = BundleAdjustment(solver_options())
    assert not ba.adjust(sfm_data, OptimizeOptions(use_motion_priors_opt=True))
    # the scene is checked before being registered
    assert ba.registration is None
    assert_same_state(sfm_data, state)


def test_priors_pull_poses():
    sfm_data = make_scene()
    # a camera without observations, only constrained by its motion prior
    C = np.array([0.0, 3.0, -6.0])
    sfm_data.poses[5] = Pose3(look_at(C), C)
    sfm_data.views[5] = View(5, 5, 0, 1000, 800)
    add_priors(sfm_data, np.zeros(3), noise=0.0)
    sfm_data.poses[5].center = C + [0.4, -0.3, 0.2]
    options = OptimizeOptions(intrinsics_opt="NONE", structure_opt="NONE")

    # the huber scale of both kinds of priors is the squared median fitting error
    reg = PriorRegistration()
    reg.usable = True
    reg.pose_center_robust_fitting_error, reg.pose_rotation_robust_fitting_error = 0.5, 0.2
    graph, _ = ba_problem.build_residual_graph(sfm_data, options, registration=reg)
    assert graph.n_blocks["pose_center_prior"] == 6
    assert graph.n_blocks["pose_rotation_prior"] == 6
    assert np.isclose(graph.center_loss_scale, 0.25)
    assert np.isclose(graph.rotation_loss_scale, 0.04)

    # without a usable registration there are no prior residuals
    graph, params_opt = ba_problem.build_residual_graph(sfm_data, options, registration=PriorRegistration())
    assert graph.n_blocks["pose_center_prior"] == 0
    assert graph.n_residuals == 2 * 5 * 40

    reg.pose_center_robust_fitting_error, reg.pose_rotation_robust_fitting_error = 10.0, 10.0
    graph, params_opt = ba_problem.build_residual_graph(sfm_data, options, registration=reg)
    config = {"verbose": False, "nb_threads": 1, "linear_solver_type": "dense_schur"}
    vars_ba, summary = run_ba_optimization(graph, params_opt, config)
    assert summary.is_solution_usable()
    graph.arena.write_back(vars_ba)
    pose = ba_params.pose_from_pose_block(graph.arena.blocks[("pose", 5)])
    assert np.linalg.norm(pose.center - C) < 1e-3
    # the observed cameras stay where their observations and priors agree
    for i in range(5):
        pose = ba_params.pose_from_pose_block(graph.arena.blocks[("pose", i)])
        assert np.allclose(pose.center, sfm_data.poses[i].center, atol=1e-4)


def make_scene_copy(sfm_data):
    return loader.sfm_data_from_dict(loader.sfm_data_to_dict(sfm_data))


def test_json_round_trip(tmp_path):
    sfm_data = make_scene("brown")
    add_priors(sfm_data, np.array([1.0, 2.0, 3.0]))
    sfm_data.control_points[0] = Landmark([0.5, 0.5, 0.5], {1: Observation([100.0, 200.0])})
    perturb_poses(sfm_data)
    options = OptimizeOptions(extrinsics_opt="ADJUST_ALL", intrinsics_opt="NONE", structure_opt="NONE")
    assert adjust(sfm_data, options, solver_options())

    path = os.path.join(str(tmp_path), "refined.json")
    loader.save_sfm_data(sfm_data, path)
    reloaded = loader.load_sfm_data(path)
    state = loader.sfm_data_to_dict(reloaded)
    assert state == loader.sfm_data_to_dict(sfm_data)

    # adjusting with every parameter fixed is a no-op
    options = OptimizeOptions(extrinsics_opt="NONE", intrinsics_opt="NONE", structure_opt="NONE")
    assert adjust(reloaded, options, solver_options())
    assert loader.sfm_data_to_dict(reloaded) == state


def test_geodetic_priors():
    d = loader.sfm_data_to_dict(make_scene())
    d["gps_to_xyz_method"] = "utm"
    for k, v in enumerate(d["views"]):
        v["prior"] = {"pose_center_lla": [48.85 + 1e-4 * k, 2.35, 35.0 + k], "center_weight": [1.0, 1.0, 2.0]}
    sfm_data = loader.sfm_data_from_dict(d)
    prior = sfm_data.views[3].prior
    assert prior.use_pose_center and not prior.use_pose_rotation
    assert np.isclose(prior.pose_center[2], 38.0)
    assert np.allclose(prior.center_weight, [1.0, 1.0, 2.0])
    # 1e-4 degrees of latitude are roughly 11 meters
    dist = np.linalg.norm(sfm_data.views[1].prior.pose_center[:2] - sfm_data.views[0].prior.pose_center[:2])
    assert 10.0 < dist < 12.5


def write_config(tmp_path, histogram=False):
    sfm_data = make_scene("radial1")
    perturb_poses(sfm_data)
    in_path = os.path.join(str(tmp_path), "scene.json")
    loader.save_sfm_data(sfm_data, in_path)
    config = {
        "input_sfm_data": in_path,
        "output_sfm_data": os.path.join(str(tmp_path), "out", "scene_ba.json"),
        "optimize_options": {"extrinsics_opt": "ADJUST_ALL", "intrinsics_opt": "NONE", "structure_opt": "NONE"},
        "ba_options": {"verbose": False, "multithreaded": False},
    }
    if histogram:
        config["histogram"] = os.path.join(str(tmp_path), "out", "errors.png")
    cfg_path = os.path.join(str(tmp_path), "config.json")
    loader.save_dict_to_json(config, cfg_path)
    return cfg_path, config


def test_main(tmp_path):
    cfg_path, config = write_config(tmp_path, histogram=True)
    assert sfm_adjust.main(cfg_path)
    assert os.path.isfile(config["histogram"])
    sfm_data = loader.load_sfm_data(config["output_sfm_data"])
    gt = make_scene("radial1")
    for i in gt.poses:
        assert np.allclose(sfm_data.poses[i].center, gt.poses[i].center, atol=1e-4)


def test_cli(tmp_path, monkeypatch):
    cfg_path, config = write_config(tmp_path)
    histogram_path = os.path.join(str(tmp_path), "hist.png")
    monkeypatch.setattr(sys, "argv", ["sfm_adjust", cfg_path, "--histogram", histogram_path])
    assert cli.main() == 0
    assert os.path.isfile(config["output_sfm_data"])
    assert os.path.isfile(histogram_path)
