from __future__ import annotations

import argparse
from pathlib import Path

from clawhost.host.app import run_forever


def main(argv: list[str] | None = None, *, runner=run_forever) -> None:
    p = argparse.ArgumentParser(description="clawhost orchestrator: mailbox drainer and task scheduler")
    p.add_argument("--config", default=None, type=Path, help="Path to host_config.json (default: built-in defaults)")
    args = p.parse_args(argv)

    runner(config_path=args.config)


if __name__ == "__main__":
    main()
