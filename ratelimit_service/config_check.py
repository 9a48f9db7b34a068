"""Command that checks a directory of rate limit configuration files."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Sequence

from .config import RateLimitConfig, RateLimitConfigError, RateLimitConfigToLoad, load_config
from .metrics import StatsManager, Store


def load_configs(
    all_configs: Iterable[RateLimitConfigToLoad], merge_domain_configs: bool
) -> RateLimitConfig:
    """Load the configurations with throwaway statistics; raises RateLimitConfigError."""
    stats_manager = StatsManager(Store())
    return load_config(all_configs, stats_manager, merge_domain_configs)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check rate limit configuration files.")
    parser.add_argument(
        "-config_dir",
        "--config_dir",
        default="",
        help="path to directory containing rate limit configs",
    )
    parser.add_argument(
        "-merge_domain_configs",
        "--merge_domain_configs",
        action="store_true",
        help="whether to merge configurations, referencing the same domain",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    directory = args.config_dir
    print("checking rate limit configs...")
    print(f"loading config directory: {directory}")

    try:
        names = sorted(entry.name for entry in Path(directory).iterdir())
    except OSError as err:
        print(f"error opening directory {directory}: {err}")
        return 1

    all_configs = []
    for name in names:
        final_path = str(Path(directory) / name)
        print(f"opening config file: {final_path}")
        try:
            contents = Path(final_path).read_bytes().decode("utf-8", errors="replace")
        except OSError as err:
            print(f"error reading file {final_path}: {err}")
            return 1
        all_configs.append(RateLimitConfigToLoad(final_path, contents))

    try:
        load_configs(all_configs, args.merge_domain_configs)
    except RateLimitConfigError as err:
        print(f"error loading rate limit configs: {err}")
        return 1

    print("all rate limit configs ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())