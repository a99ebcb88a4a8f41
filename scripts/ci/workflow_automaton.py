#!/usr/bin/env python3
"""
Workflow Automaton - scheduled bucket transitions

Runs once per pipeline schedule (daily):
- Konzeptblatt / Angebot reminders (A, B) when due
- Hand-over to "Feedback Kanzlei abwarten"
- Closing projects without feedback
- Bearbeitung → Nacharbeitung, Nacharbeitung → erledigt

Required env:
  - WORKFLOW_DATABASE_URL (or database.url in CONFIG_PATH)

Optional env:
  - RUN_DATE: YYYY-MM-DD, run as of this date (default: today)
  - DRY_RUN: "true" for no changes (run.dry_run in the config does the same)
  - CONFIG_PATH: YAML config (default: config/workflow.yml)

Exit code: 0 ok / nothing due, 1 partial failure, 2 could not fetch projects.
"""

import asyncio
import json
import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from modules.workflow.config import load_config
from modules.workflow.database import create_engine, create_session_factory
from modules.workflow.errors import RepositoryError
from modules.workflow.service import RunCoordinator, RunStatus

DRY_RUN = os.environ.get("DRY_RUN", "false").lower() == "true"
RUN_DATE = os.environ.get("RUN_DATE", "")
OUTPUT_PATH = Path("output/workflow_automaton_results.json")

EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.NO_DUE_WORK: 0,
    RunStatus.CANCELLED: 0,
    RunStatus.PARTIAL_FAILURE: 1,
    RunStatus.FETCH_FAILED: 2,
}


async def run(today: date) -> dict:
    """One automaton run; dry run when DRY_RUN or run.dry_run is set."""
    config = load_config()
    dry_run = DRY_RUN or config.run.dry_run
    engine = create_engine(config.database.url, echo=config.database.echo)
    try:
        coordinator = RunCoordinator.from_config(config, create_session_factory(engine))
        if dry_run:
            try:
                plans = await coordinator.preview(today)
            except RepositoryError as e:
                return {"status": RunStatus.FETCH_FAILED.value, "dry_run": True, "error": str(e)}
            return {
                "status": "dry_run",
                "dry_run": True,
                "transitions": [{"project_id": pid, **p.describe()} for pid, p in plans],
            }
        summary = await coordinator.run_once(today)
        return {**summary.to_dict(), "dry_run": False}
    finally:
        await engine.dispose()


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("=" * 60)
    print("Workflow Automaton")
    print("=" * 60)

    today = date.fromisoformat(RUN_DATE) if RUN_DATE else date.today()
    print(f"\n📅 Run date: {today.strftime('%d.%m.%Y')}")

    result = asyncio.run(run(today))
    if result["dry_run"]:
        print("🔍 DRY RUN MODE - No changes were made")

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    if result["status"] == "dry_run":
        print(f"  🔍 Transitions due: {len(result['transitions'])}")
        for t in result["transitions"]:
            print(f"     {t['project_id']}: {t.get('bucket', '-')} {t.get('log', '')}")
    else:
        print(f"  Status:       {result['status']}")
        print(f"  ✅ Processed: {result.get('processed', 0)}")
        print(f"  ❌ Failed:    {result.get('failed', 0)}")
        print(f"  ⏭️  Skipped:   {result.get('skipped', 0)}")
        print(f"  📝 Logged:    {result.get('logged', 0)}")
        if result.get("error"):
            print(f"  Error: {result['error']}")

    OUTPUT_PATH.parent.mkdir(parents=True, exist_ok=True)
    with open(OUTPUT_PATH, "w") as f:
        json.dump({
            "timestamp": datetime.now().isoformat(),
            "dry_run": result["dry_run"],
            "results": result,
        }, f, indent=2, ensure_ascii=False)
    print(f"\n✅ Results saved to {OUTPUT_PATH}")

    if result["status"] == "dry_run":
        sys.exit(0)
    sys.exit(EXIT_CODES[RunStatus(result["status"])])


if __name__ == "__main__":
    main()
