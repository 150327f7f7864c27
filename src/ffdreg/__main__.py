#!/usr/bin/env python
"""
Run an FFDReg command-line tool: ``python -m ffdreg <tool> [options]``.
"""

import sys

from ffdreg.cli import (
    check_centroid_alignment,
    normalize_intensity,
    register_deformable,
    register_rigid,
    resample_isotropic,
)

TOOLS = {
    "register-rigid": register_rigid.main,
    "register-deformable": register_deformable.main,
    "normalize-intensity": normalize_intensity.main,
    "check-centroid-alignment": check_centroid_alignment.main,
    "resample-isotropic": resample_isotropic.main,
}


def main(argv=None) -> int:
    """Dispatch to the tool named by the first argument."""
    argv = sys.argv[1:] if argv is None else list(argv)
    if not argv or argv[0] in ("-h", "--help") or argv[0] not in TOOLS:
        print("Usage: python -m ffdreg <tool> [options]")
        print("Tools:")
        for name in TOOLS:
            print(f"  {name}")
        if argv and argv[0] not in ("-h", "--help"):
            print(f"Error: unknown tool '{argv[0]}'", file=sys.stderr)
            return 1
        return 0 if argv else 1
    return TOOLS[argv[0]](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
