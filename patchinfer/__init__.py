__all__ = ['floatX', '__version__']

__version__ = '0.1.0'

import numpy as np
from patchinfer.logger import logger_setup
import logging
logger = logging.getLogger('patchinferlog')

logger_setup()

floatX = np.float32  # Default output dtype of PatchInference
