"""
Demons registration of a source image onto a target image.

examples:
  demons-register target.nii.gz source.nii.gz --dofout dofs.npz
  demons-register target.nii.gz source.nii.gz --dofout dofs.npz --parin demons.par --mode compositive
  demons-register target.nii.gz source.nii.gz --dofin affine.npz --dofout dofs.npz --output warped.nii.gz
"""
import argparse
import logging
import sys

import volume
from demons import DemonsRegistration
from demonsUpdate import demonsMode
from freeFormTransformation import MultiLevelFreeFormTransformation
from registrationErrors import ConfigurationError, ParseError

logger = logging.getLogger(__name__)


def buildParser():
    parser = argparse.ArgumentParser(
        prog="demons-register",
        description="Multi-resolution demons registration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("target", help="Target image (defines the reference frame)")
    parser.add_argument("source", help="Source image to warp onto the target")
    parser.add_argument("--dofout", required=True, help="Output transformation (.npz)")
    parser.add_argument("--dofin", help="Initial transformation (.npz)")
    parser.add_argument("--parin", help="Registration parameter file to read")
    parser.add_argument("--parout", help="Write the parameters used to this file")
    parser.add_argument("--mode", type=demonsMode, help="additive or compositive")
    parser.add_argument("--output", help="Write the warped source image to this file")
    parser.add_argument("--device", type=int, default=-1, help="-1 for CPU, GPU index otherwise")
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def main(argv=None):
    args = buildParser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    target = volume.load(args.target, device=args.device)
    source = volume.load(args.source, device=args.device)
    if args.dofin:
        transformation = MultiLevelFreeFormTransformation.load(args.dofin)
    else:
        transformation = MultiLevelFreeFormTransformation()

    registration = DemonsRegistration(device=args.device, progress=not args.no_progress)
    registration.setInput(target, source)
    registration.setOutput(transformation)
    registration.guessParameter()
    try:
        if args.parin:
            registration.read(args.parin)
    except ParseError as e:
        logger.error("Cannot read {}: {}".format(args.parin, e))
        return 1
    if args.mode is not None:
        registration.parameters.demonsMode = args.mode
    if args.parout:
        registration.write(args.parout)

    try:
        registration.run()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    transformation.save(args.dofout)
    logger.info("Transformation written to {}".format(args.dofout))
    if args.output:
        volume.save(registration.warpedSource(), args.output)
        logger.info("Warped source written to {}".format(args.output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
