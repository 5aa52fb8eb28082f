import argparse
import logging

import numpy as np

from .architecture import read_arch
from .batch_sizing import batch_size_for_device
from .config import estimation_strategy, extraction_config, load_config, training_config
from .deterministic import set_deterministic
from .io import extract_features_to_dir, learn_model_from_dirs, load_image
from .jsonlog import log
from .kernel_bank import ParameterStore, curate_layer, select_kernels_from_file


def cmd_learn(args):
    cfg = load_config(args.config)
    train = training_config(cfg)
    seed = train.seed if args.seed is None else args.seed
    if train.deterministic or args.deterministic:
        set_deterministic(seed)
    arch = read_arch(args.arch)
    strategy = estimation_strategy(cfg)
    log("learn_start", images=args.images, markers=args.markers, nlayers=arch.nlayers,
        strategy=type(strategy).__name__)
    banks = learn_model_from_dirs(args.images, args.markers, args.out, arch, strategy,
                                  image_list=args.image_list, device=train.device, n_jobs=train.n_jobs)
    for i, bank in enumerate(banks):
        log("layer_learned", layer=i, nkernels=bank.nkernels, nfeatures=bank.nfeatures)
    log("learn_done", out=args.out)


def cmd_extract(args):
    cfg = load_config(args.config)
    extraction = extraction_config(cfg)
    if args.device is not None:
        extraction = extraction.model_copy(update={"device": args.device})
    arch = read_arch(args.arch)
    log("extract_start", images=args.images, params=args.params, device=extraction.device)
    written = extract_features_to_dir(args.images, args.params, arch, args.out, image_list=args.image_list,
                                      object_dir=args.masks, nlayers=args.nlayers, config=extraction)
    log("extract_done", out=args.out, nimages=len(written))


def cmd_select_kernels(args):
    if args.layer is not None:
        store = ParameterStore(args.params)
        output = ParameterStore(args.out) if args.out else None
        bank = curate_layer(store, args.layer, args.manifest, output)
        log("kernels_selected", layer=args.layer, nkernels=bank.nkernels)
        return
    if not args.out:
        raise SystemExit("--out is required when selecting rows of a kernel file")
    selected = select_kernels_from_file(args.params, args.manifest)
    np.save(args.out, selected)
    log("kernels_selected", out=args.out, nkernels=int(selected.shape[0]))


def cmd_batch_size(args):
    cfg = load_config(args.config)
    extraction = extraction_config(cfg)
    device = extraction.device if args.device is None else args.device
    dense = extraction.dense
    arch = read_arch(args.arch)
    if dense is None:
        dense = arch.apply_intrinsic_atrous
    image = load_image(args.image)
    is3d = image.ndim == 4
    nchannels = 1 if image.ndim == 2 else image.shape[-1]
    nvoxels = int(np.prod(image.shape if image.ndim == 2 else image.shape[:-1]))
    size = batch_size_for_device(arch, nvoxels, nchannels, device=device,
                                 memory_budget=extraction.memory_budget,
                                 max_memory_usage_ratio=extraction.max_memory_usage_ratio,
                                 dim3d=is3d, dense=dense)
    log("batch_size", image=args.image, device=device, batch_size=size)


def main(argv=None):
    ap = argparse.ArgumentParser("flim")
    ap.add_argument("--log-level", default="WARNING")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_le = sub.add_parser("learn", help="Learn a model from marked images")
    ap_le.add_argument("--arch", required=True, help="architecture file (.json or .yaml)")
    ap_le.add_argument("--images", required=True)
    ap_le.add_argument("--markers", required=True, help="folder with <image>-seeds.txt files")
    ap_le.add_argument("--out", default="params")
    ap_le.add_argument("--image-list")
    ap_le.add_argument("--config")
    ap_le.add_argument("--seed", type=int)
    ap_le.add_argument("--deterministic", action="store_true")
    ap_le.set_defaults(func=cmd_learn)

    ap_ex = sub.add_parser("extract", help="Extract feature maps with a learned model")
    ap_ex.add_argument("--arch", required=True)
    ap_ex.add_argument("--params", required=True)
    ap_ex.add_argument("--images", required=True)
    ap_ex.add_argument("--out", required=True)
    ap_ex.add_argument("--image-list")
    ap_ex.add_argument("--masks", help="folder with object masks")
    ap_ex.add_argument("--nlayers", type=int)
    ap_ex.add_argument("--device", type=int)
    ap_ex.add_argument("--config")
    ap_ex.set_defaults(func=cmd_extract)

    ap_sk = sub.add_parser("select-kernels", help="Keep a subset of learned kernels")
    ap_sk.add_argument("--params", required=True, help="parameter folder, or a kernel .npy without --layer")
    ap_sk.add_argument("--manifest", required=True, help="JSON list of kernel indices")
    ap_sk.add_argument("--layer", type=int, help="0-based layer to curate in place (or into --out)")
    ap_sk.add_argument("--out")
    ap_sk.set_defaults(func=cmd_select_kernels)

    ap_bs = sub.add_parser("batch-size", help="Images per batch for a device")
    ap_bs.add_argument("--arch", required=True)
    ap_bs.add_argument("--image", required=True, help="representative image")
    ap_bs.add_argument("--device", type=int)
    ap_bs.add_argument("--config")
    ap_bs.set_defaults(func=cmd_batch_size)

    args = ap.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
