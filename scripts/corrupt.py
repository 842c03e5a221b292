from __future__ import annotations

import argparse
import os
import random
import sys
from typing import Optional, Tuple

from foldervault.envelope import inspect_container
from foldervault.errors import FolderVaultError


def _flip_byte(path: str, offset: int, xor_val: int = 0xFF) -> None:
    if offset < 0:
        raise ValueError("Offset must be non-negative")
    with open(path, "r+b") as f:
        f.seek(offset)
        b = f.read(1)
        if not b:
            raise ValueError("Offset beyond end of file")
        f.seek(offset)
        f.write(bytes([b[0] ^ (xor_val & 0xFF)]))
        f.flush()
        os.fsync(f.fileno())


def region_bounds(path: str, region: str) -> Tuple[int, int]:
    """Return [start, end) of ``region`` ("header", "ciphertext" or "tag") in a container."""
    header = inspect_container(path)
    size = os.path.getsize(path)
    tag_start = size - header.tag_size
    if region == "header":
        return 0, header.size
    if region == "ciphertext":
        return header.size, tag_start
    if region == "tag":
        return tag_start, size
    raise ValueError(f"Unknown region: {region}")


def cmd_by_offset(args: argparse.Namespace) -> None:
    _flip_byte(args.container, args.offset, xor_val=args.xor)
    print(f"Flipped 1 byte at offset {args.offset}")


def cmd_region(args: argparse.Namespace) -> None:
    start, end = region_bounds(args.container, args.region)
    if end <= start:
        raise ValueError(f"Region {args.region} is empty")
    if args.within is not None:
        if args.within < 0 or args.within >= end - start:
            raise ValueError(f"--within must be within region length (0..{end - start - 1})")
        off = start + args.within
    else:
        off = random.Random(args.seed).randrange(start, end)
    _flip_byte(args.container, off, xor_val=args.xor)
    print(f"Flipped 1 byte in {args.region} at offset {off}")


def cmd_truncate(args: argparse.Namespace) -> None:
    size = os.path.getsize(args.container)
    keep = max(0, size - args.bytes)
    with open(args.container, "r+b") as f:
        f.truncate(keep)
    print(f"Truncated {size - keep} byte(s); {keep} remain")


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="corrupt", description="Damage foldervault containers for testing")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_off = sub.add_parser("by-offset", help="Flip one byte at an absolute offset")
    p_off.add_argument("container", help="Path to container")
    p_off.add_argument("--offset", type=int, required=True, help="Absolute byte offset")
    p_off.add_argument("--xor", type=lambda x: int(x, 0), default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_off.set_defaults(func=cmd_by_offset)

    p_reg = sub.add_parser("region", help="Flip one byte inside the header, ciphertext or tag")
    p_reg.add_argument("container", help="Path to container")
    p_reg.add_argument("--region", choices=["header", "ciphertext", "tag"], required=True)
    p_reg.add_argument("--within", type=int, default=None, help="Offset inside the region (default: random)")
    p_reg.add_argument("--seed", type=int, default=None, help="PRNG seed for reproducibility")
    p_reg.add_argument("--xor", type=lambda x: int(x, 0), default=0xFF, help="XOR mask to apply (default 0xFF)")
    p_reg.set_defaults(func=cmd_region)

    p_trunc = sub.add_parser("truncate", help="Drop bytes from the end of the container")
    p_trunc.add_argument("container", help="Path to container")
    p_trunc.add_argument("--bytes", type=int, default=1, help="Number of bytes to drop (default 1)")
    p_trunc.set_defaults(func=cmd_truncate)

    args = ap.parse_args(argv)
    try:
        args.func(args)
    except (FolderVaultError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
