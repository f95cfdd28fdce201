"""
Main Entry Point for the Man-hour Planner

Command line front end over the state manager: loads the planner document,
applies one command as an intent, and prints or exports reports.
"""

import sys
import argparse
import logging
from pathlib import Path
from datetime import datetime
from typing import List, Optional

from .config import load_config, get_default_config, PlannerSettings
from .data_manager import DataManager, CAPACITY_KINDS, parse_date
from .errors import PlannerError
from .reporting import ExportManager, EXPORT_EXTENSIONS
from .state_manager import StateManager


def setup_logging(log_dir: str = "logs", level: int = logging.INFO):
    """Setup application logging"""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    log_file = log_path / f"manhour_planner_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Global exception handler"""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logger = logging.getLogger(__name__)
    logger.error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manhour-planner",
        description="Plan estimated man-hours over a working calendar and track actuals"
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to a YAML or JSON configuration file'
    )
    parser.add_argument(
        '--data-file',
        type=str,
        default=None,
        help='Planner document to read and write (default: storage.data_file from config)'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('summary', help='Print the progress summary')

    export = subparsers.add_parser('export', help='Export the estimate vs. actual report')
    export.add_argument('--format', choices=sorted(EXPORT_EXTENSIONS) + ['all'], default='all')
    export.add_argument('--output', type=str, default='exports',
                        help='Output file, or directory when exporting all formats')
    export.add_argument('--unit', choices=['hours', 'man_days', 'man_months'], default='hours')

    add_estimate = subparsers.add_parser('add-estimate', help='Create an estimate and allocate it')
    add_estimate.add_argument('title')
    add_estimate.add_argument('hours', type=float)
    add_estimate.add_argument('--start', type=str, default=None, help='Start date (YYYY-MM-DD)')
    add_estimate.add_argument('--version', type=str, default='')
    add_estimate.add_argument('--process', type=str, default='')

    add_block = subparsers.add_parser('add-block', help='Reserve hours for vacation or other work')
    add_block.add_argument('date')
    add_block.add_argument('hours', type=float)
    add_block.add_argument('--kind', choices=CAPACITY_KINDS, default='vacation')
    add_block.add_argument('--note', type=str, default='')

    add_holiday = subparsers.add_parser('add-holiday', help='Add a company holiday')
    add_holiday.add_argument('name')
    add_holiday.add_argument('start')
    add_holiday.add_argument('--end', type=str, default=None)

    record_actual = subparsers.add_parser('record-actual', help='Record actual hours spent')
    record_actual.add_argument('estimate_id')
    record_actual.add_argument('date')
    record_actual.add_argument('hours', type=float)
    record_actual.add_argument('--note', type=str, default='')

    pin = subparsers.add_parser('pin', help='Pin hours of an estimate on a date')
    pin.add_argument('estimate_id')
    pin.add_argument('date')
    pin.add_argument('hours', type=float)
    pin.add_argument('--clamp', action='store_true', help='Clamp to the available capacity')

    split = subparsers.add_parser('split', help='Split hours off an estimate into a new one')
    split.add_argument('estimate_id')
    split.add_argument('hours', type=float)
    split.add_argument('--title', type=str, default=None)
    split.add_argument('--as-of', type=str, default=None,
                       help='Date hours are split from (default: today)')

    merge = subparsers.add_parser('merge', help='Merge a split estimate back into its parent')
    merge.add_argument('parent_id')
    merge.add_argument('child_id')

    return parser


class ManhourPlannerApp:
    """Main application class"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.config = None
        self.data_manager = None
        self.manager = None
        self.export_manager = None

    def initialize(self, config_path: Optional[str] = None, data_file: Optional[str] = None) -> bool:
        """Initialize application components"""
        try:
            self.config = load_config(config_path) if config_path else get_default_config()
            settings = PlannerSettings.from_config(self.config)

            data_file = data_file or self.config['storage']['data_file']
            self.data_manager = DataManager(data_file)
            self.logger.info(f"Planner document: {self.data_manager.data_file}")

            self.manager = StateManager.from_data_manager(self.data_manager, settings)
            self.export_manager = ExportManager(self.manager)
            return True

        except (OSError, ValueError, PlannerError) as e:
            self.logger.error(f"Failed to initialize application: {e}", exc_info=True)
            return False

    def run(self, args: argparse.Namespace) -> bool:
        """Execute one command"""
        try:
            self._run_command(args)
        except (PlannerError, ValueError) as e:
            self.logger.error(f"{args.command} failed: {e}")
            return False

        if self.manager.last_save_error is not None:
            self.logger.error(f"Changes could not be saved: {self.manager.last_save_error}")
            return False
        return True

    def _run_command(self, args: argparse.Namespace):
        manager = self.manager

        if args.command == 'summary':
            print(self.export_manager.report_generator.create_dashboard_summary())

        elif args.command == 'export':
            if args.format == 'all':
                results = self.export_manager.batch_export(args.output, unit=args.unit)
            else:
                output = Path(args.output)
                if output.is_dir() or not output.suffix:
                    output.mkdir(parents=True, exist_ok=True)
                    output = output / self.export_manager.get_default_filename(args.format)
                results = {args.format: self.export_manager.export_report(args.format, str(output), args.unit)}
            for format_type, success in results.items():
                print(f"{format_type}: {'exported' if success else 'FAILED'}")
            if not all(results.values()):
                raise PlannerError("One or more exports failed, see the log for details")

        elif args.command == 'add-estimate':
            estimate = manager.create_estimate(args.title, args.hours, start_date=args.start,
                                               version=args.version, process=args.process)
            print(f"Created estimate {estimate.id}: {estimate.title} ({estimate.total_hours:.2f}h)")
            if estimate.unallocated_hours > 0:
                print(f"Warning: {estimate.unallocated_hours:.2f}h could not be allocated")

        elif args.command == 'add-block':
            block = manager.add_capacity_block(args.date, args.kind, args.hours, note=args.note)
            print(f"Added {block.kind} block {block.id}: {block.amount:.2f}h on {block.date}")

        elif args.command == 'add-holiday':
            holiday = manager.add_company_holiday(args.name, args.start, end_date=args.end)
            print(f"Added holiday {holiday.id}: {holiday.name} ({holiday.start_date} - {holiday.end_date})")

        elif args.command == 'record-actual':
            actual = manager.record_actual(args.estimate_id, args.date, args.hours, note=args.note)
            print(f"Recorded {actual.amount:.2f}h on {actual.date} for estimate {actual.estimate_id}")

        elif args.command == 'pin':
            entry = manager.pin(args.estimate_id, args.date, args.hours, clamp=args.clamp)
            print(f"Pinned {entry.amount:.2f}h of estimate {entry.estimate_id} on {entry.date}")

        elif args.command == 'split':
            today = parse_date(args.as_of) if args.as_of else None
            child = manager.split(args.estimate_id, args.hours, today=today, title=args.title)
            print(f"Split {child.total_hours:.2f}h into estimate {child.id}: {child.title}")

        elif args.command == 'merge':
            parent = manager.merge(args.parent_id, args.child_id)
            print(f"Merged estimate {args.child_id} into {parent.id} ({parent.total_hours:.2f}h)")


def run_cli(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run one command and return the exit code"""
    args = build_parser().parse_args(argv)

    app = ManhourPlannerApp()
    if not app.initialize(args.config, args.data_file):
        return 1
    return 0 if app.run(args) else 1


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    # Setup global exception handling
    sys.excepthook = handle_exception

    logger = setup_logging()
    logger.debug("Starting Man-hour Planner")

    sys.exit(run_cli(argv))


if __name__ == "__main__":
    main()
