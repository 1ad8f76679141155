"""Module entrypoint for `python -m vmsnap`."""

from __future__ import annotations

import sys

from .preflight import assert_workspace_ready


def main() -> int:
    try:
        assert_workspace_ready()
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print("vmsnap workspace is ready. Run `python -m vmsnap.build` to build.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
