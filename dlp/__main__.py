"""
Command-line interface for the DLP engine.
"""
import argparse
import json
import logging
import sys
import uuid
from typing import Optional

from . import __version__
from .config import Config, configure_logging
from .core import ScanRequest, ScanStatus
from .engine import DLPEngine

logger = logging.getLogger('dlp.cli')


class DLPCLI:
    """Command-line interface for scanning and classifying content."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='dlp',
            description='Data Loss Prevention scanner',
            formatter_class=argparse.ArgumentDefaultsHelpFormatter
        )
        parser.add_argument(
            '--config',
            type=str,
            default=None,
            help='Path to the YAML configuration file'
        )
        parser.add_argument(
            '--log-level',
            type=str,
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
            default=None,
            help='Logging level (overrides the configuration)'
        )
        parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

        subparsers = parser.add_subparsers(dest='command', help='Command to run')

        scan_parser = subparsers.add_parser('scan', help='Scan a data source')
        scan_parser.add_argument(
            '--source',
            required=True,
            help='Source kind: email, file_system, database, network, endpoint or cloud'
        )
        scan_parser.add_argument('--target', required=True, help='Path of the data to scan')
        scan_parser.add_argument('--scan-id', default=None, help='Scan id (generated when omitted)')
        scan_parser.add_argument(
            '--scan-type',
            choices=['full', 'incremental', 'targeted'],
            default='full',
            help='Scan type'
        )
        scan_parser.add_argument(
            '--file-type',
            action='append',
            default=[],
            dest='file_types',
            help='Only scan files matching this glob or extension (repeatable)'
        )
        scan_parser.add_argument(
            '--exclude',
            action='append',
            default=[],
            dest='exclusions',
            help='Skip files matching this glob (repeatable)'
        )
        scan_parser.add_argument(
            '--max-file-size',
            type=int,
            default=10 * 1024 * 1024,
            help='Skip files larger than this many bytes'
        )
        scan_parser.add_argument(
            '--include-archives',
            action='store_true',
            help='Read text members of zip archives'
        )

        classify_parser = subparsers.add_parser('classify', help='Classify a file or stdin')
        classify_parser.add_argument(
            'file',
            nargs='?',
            default='-',
            help="File to classify, or '-' for stdin"
        )

        subparsers.add_parser('policies', help='List the installed policies')
        subparsers.add_parser('patterns', help='List the installed patterns')
        subparsers.add_parser('status', help='Show the engine health check')

        return parser

    def run(self, args: Optional[list] = None) -> int:
        """Run the CLI and return the exit code."""
        parsed_args = self.parser.parse_args(args)

        config = Config(config_path=parsed_args.config)
        configure_logging(config)
        if parsed_args.log_level:
            logging.getLogger().setLevel(parsed_args.log_level)

        if not parsed_args.command:
            self.parser.print_help()
            return 0

        try:
            engine = DLPEngine.from_config(config)
            handler = getattr(self, f"handle_{parsed_args.command}")
            return handler(engine, parsed_args)
        except Exception as e:
            logger.error(f"Error: {str(e)}")
            logger.debug("Detailed error:", exc_info=True)
            return 1

    @staticmethod
    def _print(data) -> None:
        print(json.dumps(data, indent=2, default=str))

    def handle_scan(self, engine: DLPEngine, args: argparse.Namespace) -> int:
        request = ScanRequest(
            scan_id=args.scan_id or f"scan-{uuid.uuid4()}",
            source=args.source,
            target_path=args.target,
            scan_type=args.scan_type,
            include_archives=args.include_archives,
            max_file_size=args.max_file_size,
            file_types=args.file_types,
            exclusions=args.exclusions,
        )
        result = engine.scan(request)
        self._print(result.to_dict())
        return 1 if result.status == ScanStatus.FAILED else 0

    def handle_classify(self, engine: DLPEngine, args: argparse.Namespace) -> int:
        if args.file == '-':
            content = sys.stdin.read()
        else:
            with open(args.file, 'rb') as f:
                content = f.read()
        self._print(engine.classify(content).to_dict())
        return 0

    def handle_policies(self, engine: DLPEngine, args: argparse.Namespace) -> int:
        self._print([policy.to_dict() for policy in engine.policies.list()])
        return 0

    def handle_patterns(self, engine: DLPEngine, args: argparse.Namespace) -> int:
        self._print([pattern.to_dict() for pattern in engine.patterns.list()])
        return 0

    def handle_status(self, engine: DLPEngine, args: argparse.Namespace) -> int:
        self._print(engine.health_check())
        return 0


def main(args: Optional[list] = None) -> int:
    """Entry point for the ``dlp`` console script."""
    return DLPCLI().run(args)


if __name__ == "__main__":
    sys.exit(main())
