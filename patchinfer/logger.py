# -*- coding: utf-8 -*-
# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

import logging
import os
import getpass
import sys
import uuid
import tempfile

import colorlog


LOGGER_NAME = 'patchinferlog'


def _log_file_path() -> str:
    user_name = getpass.getuser()
    uu = uuid.uuid4()
    if os.path.isdir(f'/ptmp/{user_name}'):
        return os.path.abspath(f'/ptmp/{user_name}/{uu}_patchinfer.log')
    elif os.path.isdir('/tmp'):
        return os.path.abspath(f'/tmp/{user_name}_{uu}_patchinfer.log')
    return f'{tempfile.gettempdir()}/{user_name}_{uu}_patchinfer.log'


def logger_setup(stream_level: int = logging.INFO) -> logging.Logger:
    """Set up the ``'patchinferlog'`` logger with a colored stdout handler
    and a DEBUG-level file handler in a temporary location.

    Calling this more than once is harmless: handlers are only attached
    if the logger doesn't have any yet."""
    # Formats for colorlog.LevelFormatter
    log_level_formats = {'DEBUG': '%(log_color)s%(msg)s (%(module)s:%(lineno)d)',
                         'INFO': '%(log_color)s%(msg)s',
                         'WARNING': '%(log_color)sWARNING: %(msg)s (%(module)s:%(lineno)d)',
                         'ERROR': '%(log_color)sERROR: %(msg)s (%(module)s:%(lineno)d)',
                         'CRITICAL': '%(log_color)sCRITICAL: %(msg)s (%(module)s:%(lineno)d)',}

    log_colors = {'DEBUG': 'blue', 'INFO': 'cyan', 'WARNING': 'bold_yellow',
                  'ERROR': 'red', 'CRITICAL': 'red,bg_white'}

    logger = logging.getLogger(LOGGER_NAME)
    if not len(logger.handlers) > 0:
        logger.setLevel(logging.DEBUG)

        lfile_formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)s]\t%(message)s',
            datefmt='%Y-%m-%d %H:%M:%S')
        try:
            lfile_handler = logging.FileHandler(_log_file_path())
        except OSError:
            # Read-only temp dirs (e.g. some containers): log to stdout only
            lfile_handler = None
        if lfile_handler is not None:
            lfile_handler.setLevel(logging.DEBUG)
            lfile_handler.setFormatter(lfile_formatter)
            logger.addHandler(lfile_handler)

        lstream_handler = colorlog.StreamHandler(sys.stdout)
        lstream_handler.setFormatter(
            colorlog.LevelFormatter(fmt=log_level_formats,
                                    log_colors=log_colors))
        # set this to logging.DEBUG to enable output for logger.debug() calls
        lstream_handler.setLevel(stream_level)
        logger.addHandler(lstream_handler)

        logger.propagate = False
    return logger
