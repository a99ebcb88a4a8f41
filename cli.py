#!/usr/bin/env python3
"""Unified CLI for the Kanzlei Pipeline.

Usage:
    python cli.py workflow --help
"""
import sys
import argparse


def main():
    parser = argparse.ArgumentParser(
        description='⚖️ Kanzlei Pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modules:
  workflow      Bucket automaton (reminders, follow-ups, closing)

Examples:
  python cli.py workflow init-db --templates
  python cli.py workflow buckets
  python cli.py workflow preview --date 2026-10-19
  python cli.py workflow run
  python cli.py workflow serve --port 8080
"""
    )

    parser.add_argument(
        'module',
        choices=['workflow'],
        help='Module to run'
    )

    # Parse just the module, pass rest to submodule
    args, remaining = parser.parse_known_args()

    # Dispatch to module CLI
    if args.module == 'workflow':
        from modules.workflow.cli import main as wf_main
        sys.argv = ['workflow'] + remaining
        wf_main()


if __name__ == '__main__':
    main()
