"""
Bundle adjustment of Structure-from-Motion scenes constrained by motion priors

This script implements all functions necessary to define the variables involved in the bundle adjustment
in the necessary format employed by the numerical optimization tools, and the inverse conversion too

All parameter blocks live in a ParameterBlockArena: poses and intrinsics are copied into buffers owned by
the arena, while landmark blocks borrow the 3d coordinates array of the landmark itself.
The arena must outlive the optimization, the solver only reads and writes the buffers through it.
"""

import numpy as np

from sfm_adjust import ba_rotate
from sfm_adjust.cam_models import INTRINSIC_FLAGS
from sfm_adjust.loader import flush_print
from sfm_adjust.sfm_data import Pose3


class Error(Exception):
    pass


EXTRINSIC_POLICIES = ["NONE", "ADJUST_ROTATION", "ADJUST_TRANSLATION", "ADJUST_ALL"]
STRUCTURE_POLICIES = ["NONE", "ADJUST"]

POSE_BLOCK_SIZE = 6
ROTATION_INDICES = [0, 1, 2]
TRANSLATION_INDICES = [3, 4, 5]


def check_extrinsics_opt(extrinsics_opt):
    if extrinsics_opt not in EXTRINSIC_POLICIES:
        raise Error("{} is not a valid extrinsics policy".format(extrinsics_opt))
    return extrinsics_opt


def check_structure_opt(structure_opt):
    if structure_opt not in STRUCTURE_POLICIES:
        raise Error("{} is not a valid structure policy".format(structure_opt))
    return structure_opt


def normalize_intrinsics_opt(intrinsics_opt):
    """
    Converts an intrinsics policy to the set of groups of intrinsic parameters to refine

    Args:
        intrinsics_opt: "NONE", "ADJUST_ALL", a single flag or a list of flags among
                        "ADJUST_FOCAL_LENGTH", "ADJUST_PRINCIPAL_POINT", "ADJUST_DISTORTION"

    Returns:
        flags: frozenset of flags, empty if the intrinsics are held fixed
    """
    if intrinsics_opt is None or intrinsics_opt == "NONE":
        return frozenset()
    if intrinsics_opt == "ADJUST_ALL":
        return frozenset(INTRINSIC_FLAGS)
    if isinstance(intrinsics_opt, str):
        intrinsics_opt = [intrinsics_opt]
    for v in intrinsics_opt:
        if v not in INTRINSIC_FLAGS:
            raise Error("{} is not a valid intrinsic parameter group to optimize".format(v))
    return frozenset(intrinsics_opt)


def pose_block_from_pose(pose):
    """
    Encodes a Pose3 as a 6 valued parameter block [axis-angle rotation, translation]
    """
    return np.hstack((ba_rotate.axis_angle_from_R(pose.rotation), pose.translation))


def pose_from_pose_block(block):
    """
    Decodes a 6 valued parameter block [axis-angle rotation, translation] to the rotation and the camera center
    """
    R = ba_rotate.axis_angle_to_R(block[:3])
    C = -R.T @ np.asarray(block[3:6])
    return Pose3(R, C)


def extrinsic_constant_indices(extrinsics_opt):
    """
    Indices of the pose parameter block that are held fixed for a given extrinsics policy
    """
    if extrinsics_opt == "ADJUST_TRANSLATION":
        return list(ROTATION_INDICES)
    if extrinsics_opt == "ADJUST_ROTATION":
        return list(TRANSLATION_INDICES)
    return []


class ParameterBlockArena:
    def __init__(self):
        """
        The ParameterBlockArena class is in charge of the conversion of all parameter blocks of the bundle
        adjustment problem to the vector of variables used to feed the numerical optimization, and back

        Blocks are identified by a key, e.g. ("pose", 3) or ("landmark", 10)
        A block can be entirely constant or have a subset of constant entries
        """
        self.blocks = {}
        self.keys = []
        self.constant = set()
        self.constant_indices = {}
        self.finalized = False

    def add_parameter_block(self, key, values, borrow=False):
        """
        Registers a parameter block, adding an existing key again is a no-op

        Args:
            key: hashable identifier of the block
            values: vector with the initial values of the block
            borrow (optional): if True, values must be a float64 1d numpy array, which is used as the storage of
                               the block and receives the refined values; otherwise the values are copied
        Returns:
            buffer: the storage of the block
        """
        if key in self.blocks:
            return self.blocks[key]
        if self.finalized:
            raise Error("cannot add parameter block {} to a finalized arena".format(key))
        if borrow:
            if not (isinstance(values, np.ndarray) and values.dtype == np.float64 and values.ndim == 1):
                raise Error("borrowed parameter block {} must be a float64 vector".format(key))
            buffer = values
        else:
            buffer = np.array(values, dtype=np.float64).ravel()
        self.blocks[key] = buffer
        self.keys.append(key)
        return buffer

    def has_parameter_block(self, key):
        return key in self.blocks

    def _check_key(self, key):
        if key not in self.blocks:
            raise Error("parameter block {} was not added to the problem".format(key))
        if self.finalized:
            raise Error("cannot modify parameter block {} of a finalized arena".format(key))

    def set_parameter_block_constant(self, key):
        self._check_key(key)
        self.constant.add(key)
        self.constant_indices.pop(key, None)

    def set_parameter_subset_constant(self, key, indices):
        """
        Holds a subset of the entries of a block fixed, skipped if the whole block is already constant
        """
        self._check_key(key)
        if key in self.constant or len(indices) == 0:
            return
        indices = sorted(set(int(i) for i in indices))
        if indices[0] < 0 or indices[-1] >= self.blocks[key].size:
            raise Error("constant indices {} out of range for parameter block {}".format(indices, key))
        if len(indices) == self.blocks[key].size:
            self.set_parameter_block_constant(key)
        else:
            self.constant_indices[key] = indices

    def is_constant(self, key):
        return key in self.constant

    def finalize(self):
        """
        Freezes the layout of the blocks and defines the vector of variables to optimize

        Returns:
            params_opt: vector with the initial value of the free variables
        """
        self.offsets, offset = {}, 0
        for key in self.keys:
            self.offsets[key] = offset
            offset += self.blocks[key].size
        self.n_full = offset
        self.full_init = np.zeros(self.n_full)
        free_mask = np.ones(self.n_full, dtype=bool)
        for key in self.keys:
            o, size = self.offsets[key], self.blocks[key].size
            self.full_init[o : o + size] = self.blocks[key]
            if key in self.constant:
                free_mask[o : o + size] = False
            for i in self.constant_indices.get(key, []):
                free_mask[o + i] = False
        self.free_indices = np.flatnonzero(free_mask)
        # column of each entry of the full vector in the vector of variables, -1 if fixed
        self.column_of = np.full(self.n_full, -1, dtype=int)
        self.column_of[self.free_indices] = np.arange(self.free_indices.size)
        self.finalized = True
        return self.full_init[self.free_indices].copy()

    @property
    def n_params(self):
        return self.free_indices.size

    def offset(self, key):
        return self.offsets[key]

    def block_indices(self, key):
        """
        Positions of the entries of a block inside the full vector of parameters
        """
        o = self.offsets[key]
        return np.arange(o, o + self.blocks[key].size)

    def get_vars_ready_for_fun(self, v):
        """
        Given the vector of variables of the optimization, returns the full vector with all block values
        """
        full = self.full_init.copy()
        full[self.free_indices] = v
        return full

    def write_back(self, v, kinds=None):
        """
        Copies the refined values of the non constant blocks into their buffers

        Args:
            v: vector of variables output by the solver
            kinds (optional): list of block kinds (first element of the keys) to update, all kinds by default
        """
        full = self.get_vars_ready_for_fun(v)
        for key in self.keys:
            if key in self.constant or (kinds is not None and key[0] not in kinds):
                continue
            o = self.offsets[key]
            self.blocks[key][:] = full[o : o + self.blocks[key].size]


def add_pose_blocks(arena, sfm_data, extrinsics_opt):
    """
    Adds a 6 valued parameter block per pose of the scene, according to the extrinsics policy
    """
    check_extrinsics_opt(extrinsics_opt)
    constant_indices = extrinsic_constant_indices(extrinsics_opt)
    for pose_id in sorted(sfm_data.poses):
        key = ("pose", pose_id)
        arena.add_parameter_block(key, pose_block_from_pose(sfm_data.poses[pose_id]))
        if extrinsics_opt == "NONE":
            # set the whole parameter block as constant
            arena.set_parameter_block_constant(key)
        else:
            arena.set_parameter_subset_constant(key, constant_indices)


def add_intrinsic_blocks(arena, sfm_data, intrinsics_opt):
    """
    Adds a parameter block per intrinsic of the scene with a non empty vector of parameters
    """
    flags = normalize_intrinsics_opt(intrinsics_opt)
    for intrinsic_id in sorted(sfm_data.intrinsics):
        intrinsic = sfm_data.intrinsics[intrinsic_id]
        if not intrinsic.is_valid():
            flush_print("ERROR: Unsupported camera type {} (intrinsic {})".format(intrinsic.model, intrinsic_id))
            continue
        params = intrinsic.get_params()
        if params.size == 0:
            continue
        key = ("intrinsic", intrinsic_id)
        arena.add_parameter_block(key, params)
        if not flags:
            arena.set_parameter_block_constant(key)
        else:
            arena.set_parameter_subset_constant(key, intrinsic.subset_parameterization(flags))
