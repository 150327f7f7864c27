"""Command-line interface modules for FFDReg."""

import sys

from ffdreg.errors import RegistrationError

__all__ = [
    "check_centroid_alignment",
    "normalize_intensity",
    "register_deformable",
    "register_rigid",
    "resample_isotropic",
    "report_error",
]


def report_error(err: RegistrationError) -> int:
    """Print ``Error [<stage>] <Kind>: <message>`` to stderr and return 1."""
    stage = err.stage if err.stage is not None else "run"
    message = err.message
    if err.level is not None:
        message = f"{message} (level {err.level})"
    print(f"Error [{stage}] {type(err).__name__}: {message}", file=sys.stderr)
    return 1


def add_registration_arguments(parser, default_bins: int, default_levels: int) -> None:
    """Options shared by the rigid and deformable registration tools."""
    parser.add_argument(
        "--levels",
        type=int,
        default=default_levels,
        help=f"Number of pyramid levels (default: {default_levels})",
    )
    parser.add_argument(
        "--shrink-factors",
        nargs="+",
        type=int,
        help="Explicit shrink factor per level, coarse to fine (e.g. 4 2 1)",
    )
    parser.add_argument(
        "--smoothing-sigmas",
        nargs="+",
        type=float,
        help="Explicit smoothing sigma per level in mm (e.g. 2 1 0)",
    )
    parser.add_argument(
        "--bins",
        type=int,
        default=default_bins,
        help=f"Mutual information histogram bins (default: {default_bins})",
    )
    parser.add_argument(
        "--samples",
        type=int,
        default=10000,
        help="Metric samples per level, 0 for every voxel (default: 10000)",
    )
    parser.add_argument(
        "--seed", type=int, default=121212, help="Sampling seed (default: 121212)"
    )
    parser.add_argument(
        "--threads", type=int, default=1, help="Metric worker threads (default: 1)"
    )
    parser.add_argument(
        "--iterations", type=int, help="Maximum optimizer iterations per level"
    )
    parser.add_argument(
        "--max-evaluations", type=int, help="Maximum metric evaluations per level"
    )
    parser.add_argument("--fixed-mask", help="Fixed volume mask (non-zero = foreground)")
    parser.add_argument(
        "--normalize",
        action="store_true",
        default=False,
        help="Z-score both volumes before registration (default: False)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def configure_registrar(registrar, args, fixed_mask=None) -> None:
    """Apply the shared registration options to a registrar.

    Raises:
        ConfigurationError: On invalid option values
    """
    if args.shrink_factors or args.smoothing_sigmas:
        registrar.set_schedule(args.shrink_factors or [], args.smoothing_sigmas or [])
    else:
        registrar.set_number_of_levels(args.levels)
    registrar.set_number_of_histogram_bins(args.bins)
    registrar.set_number_of_samples(args.samples if args.samples > 0 else None)
    registrar.set_random_seed(args.seed)
    registrar.set_number_of_threads(args.threads)
    if args.iterations is not None:
        registrar.set_number_of_iterations(args.iterations)
    if args.max_evaluations is not None:
        registrar.set_maximum_number_of_function_evaluations(args.max_evaluations)
    if fixed_mask is not None:
        registrar.set_fixed_image_mask(fixed_mask)
