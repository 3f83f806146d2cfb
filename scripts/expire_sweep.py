"""Cron entry point: expire every user whose expiry has passed.

Example crontab line::

    */15 * * * * /opt/vpnpanel/.venv/bin/python /opt/vpnpanel/scripts/expire_sweep.py
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.application import build_panel, load_panel_config
from vpnpanel.errors import PanelError

logger = logging.getLogger("vpnpanel.sweep")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire VPN panel users whose expiry has passed")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the panel configuration (defaults to VPNPANEL_CONFIG or config/panel.yaml)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        config = load_panel_config(args.config)
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    try:
        panel = build_panel(config)
        changed = panel.orchestrator.expire_sweep()
    except PanelError as exc:
        logger.error("Expiry sweep aborted at stage %s: %s", exc.stage, exc)
        return 1

    logger.info("Expiry sweep finished (%s)", "records changed" if changed else "nothing to do")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
