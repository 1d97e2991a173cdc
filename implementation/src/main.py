from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from miner.errors import ImportFormatError
from miner.session import GameSession, run_for
from miner.settings import load_settings
from miner.storage import FileStorage

logger = logging.getLogger("miner")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Headless divine mining session")
    parser.add_argument("--user", default=None, help="user id used to namespace save keys")
    parser.add_argument("--save-dir", type=Path, default=None, help="directory for save files")
    parser.add_argument("--settings", type=Path, default=None, help="settings JSON file")
    parser.add_argument("--seconds", type=float, default=10.0, help="how long to run")
    parser.add_argument("--mine", action="store_true", help="start mining after load")
    parser.add_argument("--claim", action="store_true", help="claim pending offline rewards")
    parser.add_argument("--buy", action="append", default=[], metavar="UPGRADE_ID",
                        help="purchase one level of an upgrade (repeatable)")
    parser.add_argument("--export", type=Path, default=None, help="write a portable save to this file")
    parser.add_argument("--encrypt", action="store_true", help="encrypt the exported save")
    parser.add_argument("--import", dest="import_path", type=Path, default=None,
                        help="replace progress with a portable save file")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = _parse_args(argv)
    settings = load_settings(args.settings)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

    save_dir = args.save_dir or Path(settings.save_dir)
    session = GameSession(FileStorage(save_dir), settings, user_id=args.user)
    session.load()

    if args.import_path is not None:
        try:
            session.import_text(args.import_path.read_text(encoding="utf-8-sig"))
        except (OSError, ImportFormatError) as e:
            logger.error("Import failed: %s", e)
            return 1

    if args.claim:
        session.claim_offline_rewards()
    for upgrade_id in args.buy:
        result = session.purchase(upgrade_id)
        logger.info("Buy %s: %s", upgrade_id, result.outcome.value)
    if args.mine and not session.start_mining():
        logger.warning("Not enough energy to start mining")

    try:
        await run_for(session, args.seconds)
    finally:
        state = session.state
        print(f"points={state.points:.2f} pps={state.points_per_second:.2f} "
              f"energy={state.current_energy:.1f}/{state.max_energy:.0f} "
              f"mining={state.is_mining} unclaimed={state.unclaimed_offline_rewards:.2f} "
              f"save={session.persistence.status.value}")

    if args.export is not None:
        args.export.write_text(session.export(encrypted=args.encrypt), encoding="utf-8")
        logger.info("Exported save to %s", args.export)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
