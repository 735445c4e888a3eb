# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

from typing import Optional


class ConfigurationError(ValueError):
    """Raised if inference is set up in a way that can't work, e.g. if no
    model is loaded, patch and overlap sizes don't fit together or layouts
    don't describe the same axes."""
    pass


class ModelExecutionError(RuntimeError):
    """Raised if running the model on a patch fails.

    Args:
        model_id: Identifier (usually the file name) of the model that failed.
        msg: Diagnostic message of the underlying error.
    """
    def __init__(self, model_id: Optional[str], msg: str):
        self.model_id = model_id
        self.msg = msg
        super().__init__(f"Error while running model '{model_id}': {msg}")
