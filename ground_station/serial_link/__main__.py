from __future__ import annotations

from typing import List, Optional

from .cli import build_arg_parser, run_cli


def main(argv: Optional[List[str]] = None) -> int:
    return run_cli(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
