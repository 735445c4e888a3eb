#!/usr/bin/env python3

# PATCHINFER - Patched Neural Network Inference
#
# Copyright (c) 2017 - now
# Max Planck Institute of Neurobiology, Munich, Germany

"""
Example script that shows how ``patchinfer.inference.PatchInference`` can be
used with a TorchScript model to perform patched inference on a 3D HDF5
dataset of shape (Z, Y, X) and write the results to another HDF5 file.

The volume is split into overlapping patches along its X axis, so only
``--patch-size`` pixels along X have to fit into the model at once.

IMPORTANT: If your model was trained on normalized data, remember to pass the
same normalization with ``--normalization``! Forgetting this will not result
in a crash or warning, but your predictions will be damaged.
"""

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

import h5py
import numpy as np
import torch

from patchinfer.inference import PatchInference

logger = logging.getLogger('patchinferlog')


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Patched inference from and to HDF5 files.')
    parser.add_argument('model', help='Path to the model file (.pts or .pt).')
    parser.add_argument('inpath', help='Path to the HDF5 file on which to run inference.')
    parser.add_argument('--inkey', default='raw', help='HDF5 dataset from which inputs are read.')
    parser.add_argument('--outpath', default=None, help='Default: Write to a file next to inpath.')
    parser.add_argument('--outkey', default='out')
    parser.add_argument('--normalization', default=None,
                        help='TorchScript file defining normalize(x), applied to every input patch.')
    parser.add_argument('--denormalization', default=None,
                        help='TorchScript file defining denormalize(x), applied to every output patch.')
    parser.add_argument('--patch-size', type=int, default=0,
                        help='Maximum patch size along X. 0 disables patching.')
    parser.add_argument('--patch-overlap', type=int, default=0,
                        help='Overlap added to each patch side. Should cover the receptive field of the model.')
    parser.add_argument('--layout', default='NZYX', help='Layout of the (1, Z, Y, X) input tensor.')
    parser.add_argument('--final-layout', default=None, help='Output layout. Default: same as --layout.')
    parser.add_argument('--model-input-layout', default=None, help='Default: same as --layout.')
    parser.add_argument('--model-output-layout', default=None, help='Default: same as --model-input-layout.')
    parser.add_argument('--model-input-dtype', default='float')
    parser.add_argument('--model-output-dtype', default='float')
    parser.add_argument('--out-dtype', default='float32', help='numpy dtype of the written dataset.')
    parser.add_argument('--out-z', type=int, default=None,
                        help='Output extent along Z if the model changes it (e.g. channels). Default: input Z.')
    parser.add_argument('--disable-cuda', action='store_true', help='Disable CUDA')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = get_parser().parse_args(argv)

    if not args.disable_cuda and torch.cuda.is_available():
        device = torch.device('cuda')
    else:
        device = torch.device('cpu')
    logger.info(f'Running on device: {device}')

    inpath = os.path.expanduser(args.inpath)
    outpath = args.outpath
    if outpath is None:
        r, e = os.path.splitext(inpath)
        outpath = f'{r}_out{e}'
    final_layout = args.final_layout or args.layout
    model_input_layout = args.model_input_layout or args.layout
    model_output_layout = args.model_output_layout or model_input_layout

    logger.info(f'Loading input from {inpath}[{args.inkey}]...')
    with h5py.File(inpath, 'r') as infile:
        inp = infile[args.inkey][()]
    logger.info(f'Input: shape={inp.shape}, dtype={inp.dtype}')
    if inp.ndim != 3:
        logger.error(f'Expected a 3D (Z, Y, X) dataset, got shape {inp.shape}.')
        return 1
    input_size = (inp.shape[2], inp.shape[1], inp.shape[0])
    out_z = inp.shape[0] if args.out_z is None else args.out_z
    output_size = (inp.shape[2], inp.shape[1], out_z)

    logger.info(f'Loading model file {args.model}...')
    inference = PatchInference(
        model=os.path.expanduser(args.model),
        input_normalization=args.normalization,
        output_denormalization=args.denormalization,
        device=device,
        out_dtype=np.dtype(args.out_dtype),
        verbose=True
    )
    logger.info('\nPredicting...')
    out = inference.process(
        inp,
        input_size=input_size,
        output_size=output_size,
        current_layout=args.layout,
        final_layout=final_layout,
        model_input_dtype=args.model_input_dtype,
        model_output_dtype=args.model_output_dtype,
        model_input_layout=model_input_layout,
        model_output_layout=model_output_layout,
        patch_size=args.patch_size,
        patch_overlap=args.patch_overlap
    )
    if out is None:
        logger.error('Inference failed, no output written.')
        return 1
    out = out.reshape(output_size[::-1])

    logger.info(f'Output: shape={out.shape}, dtype={out.dtype}')
    logger.info(f'Writing output to {outpath}[{args.outkey}]...')
    with h5py.File(outpath, 'w') as outfile:
        outfile.create_dataset(args.outkey, data=out)
    logger.info('Done.')
    return 0


if __name__ == '__main__':
    sys.exit(main())
