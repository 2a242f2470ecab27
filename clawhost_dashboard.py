from __future__ import annotations

import argparse
from pathlib import Path

import uvicorn

from clawhost.dashboard.app import create_app


def main(argv: list[str] | None = None) -> None:
    p = argparse.ArgumentParser(description="clawhost dashboard API (read-only)")
    p.add_argument("--data-dir", required=True, type=Path, help="Host data directory (data_dir in host_config.json)")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", default=8000, type=int)
    args = p.parse_args(argv)

    app = create_app(data_dir=args.data_dir)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
