"""Workflow automaton CLI.

Usage:
    python cli.py workflow run [--date 2026-10-19] [--dry-run]
    python cli.py workflow preview
    python cli.py workflow buckets
    python cli.py workflow init-db --templates
    python cli.py workflow serve --port 8080

Exit codes for `run`: 0 = completed / no due work, 1 = partial failure,
2 = could not fetch candidates.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import date

from .buckets import BUCKET_DEFINITIONS
from .config import load_config, reload_config
from .database import create_engine, create_session_factory, init_db
from .errors import RepositoryError
from .repository import SqlTemplateRepository
from .rules import GOVERNED_BUCKETS, TEMPLATE_ANGEBOT, TEMPLATE_KONZEPTBLATT
from .service import RunCoordinator, RunStatus

EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.NO_DUE_WORK: 0,
    RunStatus.CANCELLED: 0,
    RunStatus.PARTIAL_FAILURE: 1,
    RunStatus.FETCH_FAILED: 2,
}

DEFAULT_TEMPLATES = {
    TEMPLATE_KONZEPTBLATT: ("Ihr Konzeptblatt", "Anbei erhalten Sie das Konzeptblatt."),
    TEMPLATE_ANGEBOT: ("Ihr Angebot", "Anbei erhalten Sie unser Angebot."),
}


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}' (expected YYYY-MM-DD)")


async def _run(config, today: date, dry_run: bool, as_json: bool) -> int:
    engine = create_engine(config.database.url, echo=config.database.echo)
    try:
        coordinator = RunCoordinator.from_config(config, create_session_factory(engine))

        if dry_run:
            try:
                plans = await coordinator.preview(today)
            except RepositoryError as e:
                print(f"❌ Could not fetch candidates: {e}")
                return EXIT_CODES[RunStatus.FETCH_FAILED]
            if as_json:
                print(json.dumps(
                    [{"project_id": pid, **plan.describe()} for pid, plan in plans],
                    indent=2, ensure_ascii=False,
                ))
                return 0
            print(f"🔍 DRY RUN {today.isoformat()} - {len(plans)} transitions would fire")
            for project_id, plan in plans:
                print(f"  {project_id}: {plan.describe()}")
            return 0

        summary = await coordinator.run_once(today)
    finally:
        await engine.dispose()

    if as_json:
        print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(f"⚙️  Workflow run {today.isoformat()}: {summary.status.value}")
        print(f"   ✅ processed: {summary.processed}")
        print(f"   ❌ failed:    {summary.failed}")
        print(f"   ⏭️  skipped:   {summary.skipped}")
        print(f"   📝 logged:    {summary.logged}")
        if summary.error:
            print(f"   Error: {summary.error}")
        for outcome in summary.outcomes:
            if outcome.error:
                print(f"   ⚠️ {outcome.project_id}: {outcome.error}")
    return EXIT_CODES[summary.status]


async def _init_db(config, with_templates: bool) -> None:
    engine = create_engine(config.database.url, echo=config.database.echo)
    try:
        await init_db(engine)
        if with_templates:
            templates = SqlTemplateRepository(create_session_factory(engine))
            for name, (subject, body) in DEFAULT_TEMPLATES.items():
                await templates.upsert(name, subject, body)
                print(f"   📝 Template '{name}'")
    finally:
        await engine.dispose()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Kanzlei Pipeline - Workflow Automaton')
    parser.add_argument('--config', help='Path to YAML config (default: $CONFIG_PATH)')
    sub = parser.add_subparsers(dest='command', required=True)

    run_p = sub.add_parser('run', help='Run the automaton once')
    run_p.add_argument('--date', type=_parse_date, help='Run as of this date (YYYY-MM-DD)')
    run_p.add_argument('--dry-run', action='store_true', help='Show transitions, change nothing')
    run_p.add_argument('--json', action='store_true', help='Print the summary as JSON')

    preview_p = sub.add_parser('preview', help='Alias for run --dry-run')
    preview_p.add_argument('--date', type=_parse_date)
    preview_p.add_argument('--json', action='store_true')

    sub.add_parser('buckets', help='List board buckets')

    init_p = sub.add_parser('init-db', help='Create tables')
    init_p.add_argument('--templates', action='store_true', help='Also create default mail templates')

    serve_p = sub.add_parser('serve', help='Start the HTTP trigger')
    serve_p.add_argument('--host', default='0.0.0.0')
    serve_p.add_argument('--port', type=int, default=int(os.getenv('PORT', '8080')))

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "WARNING"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config)

    if args.command in ('run', 'preview'):
        today = args.date or date.today()
        dry_run = args.command == 'preview' or args.dry_run or config.run.dry_run
        sys.exit(asyncio.run(_run(config, today, dry_run, args.json)))

    elif args.command == 'buckets':
        for i, d in enumerate(BUCKET_DEFINITIONS, 1):
            marker = '⚙️ ' if d.bucket in GOVERNED_BUCKETS else '✋'
            print(f'{i:2}. {marker} {d.bucket.value:<36} {d.description}')

    elif args.command == 'init-db':
        print(f'🗄️  Initializing {config.database.url}')
        asyncio.run(_init_db(config, args.templates))
        print('✅ Done')

    elif args.command == 'serve':
        import uvicorn
        # the app reads the process-wide config in its lifespan
        reload_config(args.config)
        uvicorn.run('modules.workflow.api:app', host=args.host, port=args.port)


if __name__ == '__main__':
    main()
