"""Entry point for `python -m keygate_api` and the `keygate` console script."""

from __future__ import annotations

from keygate_api.cli import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
