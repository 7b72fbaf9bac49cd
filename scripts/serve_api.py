from __future__ import annotations

import argparse

import uvicorn

from inboxrag.core.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the InboxRAG webhook and upload API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    return parser


def main() -> None:
    # Log level follows settings so API and worker output line up.
    args = _build_parser().parse_args()
    uvicorn.run(
        "inboxrag.apps.api.main:app",
        host=args.host,
        port=args.port,
        log_level=get_settings().log_level.lower(),
    )


if __name__ == "__main__":
    main()
