"""Utilities for neural network inference on volumes that are too large
to be passed to a model at once along one axis.

The volume is cut into overlapping patches along its x axis, the model is
run on every patch, the overlap regions are discarded and the remaining valid
regions are stitched together into one output buffer.

Important note: Currently this module assumes that the model output of a
patch has the same extent along the tiled axis as the input patch. If your
model output is strided w.r.t. the inputs (e.g. due to pooling or strided
convolution without subsequent upsampling) or part of the borders is cut off
(e.g. due to "valid" convolutions without shape-preserving padding), you will
need to alter/wrap it to take this into account.
"""

from .dtypes import DataType, clamp_cast, get_converter
from .errors import ConfigurationError, ModelExecutionError
from .inference import PatchInference, patched_apply
from .layout import TiledAxis, change_layout, layout_permutation
from .model import ModelExecutor, TorchScriptModel
from .planner import PatchWindow, plan_patches
from .reassembly import VolumeSize, copy_patch_to_output
