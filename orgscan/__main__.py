"""
orgscan - scan GitHub organizations for compliance problems and keep tracking issues current.
"""
import argparse
import logging
import signal
import sys
from datetime import timedelta
from typing import List, Optional

from dotenv import load_dotenv

from . import __version__
from .cache import CacheStore
from .config import Settings
from .detectors import DETECTOR_IDS, build_detectors
from .errors import OperationalFailure, ProviderError
from .github import GitHubAPI
from .reports import IssueRenderer, ReportGenerator
from .scan import CancelToken, RunOptions, ScanRunner
from .tracking import GitHubIssueTracker

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

_token: Optional[CancelToken] = None
_interrupted = False


def parse_args(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    settings = settings or Settings()
    parser = argparse.ArgumentParser(
        prog='orgscan',
        description='Scan GitHub organizations for compliance problems and maintain tracking issues.'
    )
    parser.add_argument('detector', choices=list(DETECTOR_IDS) + ['all'],
                        help='Detector to run, or "all"')

    # Run options
    run_group = parser.add_argument_group('Run Options')
    run_group.add_argument('--create-issues', action='store_true',
                           help='Open/close issues on the affected repositories')
    run_group.add_argument('--clear-cache', action='store_true',
                           help='Delete all cache partitions before scanning')
    run_group.add_argument('--force', action='store_true',
                           help='Ignore cache freshness and reconsider every repository')
    run_group.add_argument('--no-tracking', action='store_true',
                           help='Do not read or update tracking issues')
    run_group.add_argument('--max-workers', type=int, default=settings.MAX_WORKERS,
                           help=f'Maximum number of parallel repository scans (default: {settings.MAX_WORKERS})')
    run_group.add_argument('--deadline-minutes', type=float, default=settings.SCAN_DEADLINE_MINUTES,
                           help='Stop scanning after this many minutes; 0 means no deadline')

    # GitHub options
    github_group = parser.add_argument_group('GitHub Options')
    github_group.add_argument('--org', action='append', dest='orgs',
                              help='Organization to scan (repeatable; default: GITHUB_ORGS)')
    github_group.add_argument('--token', help='GitHub personal access token (default: GITHUB_TOKEN env var)')

    # Detector options
    detector_group = parser.add_argument_group('Detector Options')
    detector_group.add_argument('--check-minor', action='store_true',
                                help='go-version: require a supported patch release, not just minor series')
    detector_group.add_argument('--ubi-version', default='ubi7',
                                help='ubi: base image to look for (default: ubi7)')

    # Output options
    output_group = parser.add_argument_group('Output Options')
    output_group.add_argument('--report-dir', default=settings.REPORT_DIR,
                              help=f'Directory for report artifacts (default: {settings.REPORT_DIR})')
    output_group.add_argument('--cache-dir', default=settings.CACHE_DIR,
                              help=f'Directory for cache partitions (default: {settings.CACHE_DIR})')

    # Other options
    other_group = parser.add_argument_group('Other Options')
    other_group.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')
    other_group.add_argument('--debug', action='store_true', help='Enable debug output')
    other_group.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(argv)


def configure_logging(verbose: bool = False, debug: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('orgscan.log')
        ],
        force=True,
    )
    # Per-request chatter from urllib3 is only useful when debugging
    logging.getLogger('urllib3').setLevel(logging.DEBUG if debug else logging.WARNING)


def signal_handler(sig, frame):
    """Handle interrupt signals gracefully."""
    global _interrupted

    if _interrupted:
        # Second Ctrl-C - force immediate shutdown
        print("\n⚠️  Force shutdown requested. Exiting immediately...", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)

    _interrupted = True
    print("\n⚠️  Received interrupt signal. Finishing in-flight work and writing a partial report...",
          file=sys.stderr)
    print("   Press Ctrl-C again to force immediate shutdown.", file=sys.stderr)
    if _token is not None:
        _token.cancel("interrupted")


def build_runner(args: argparse.Namespace, settings: Settings, api: GitHubAPI) -> ScanRunner:
    tracker = None
    if not args.no_tracking:
        if settings.TRACKING_REPO:
            tracker = GitHubIssueTracker(api, settings.TRACKING_REPO, IssueRenderer())
        else:
            logger.warning("TRACKING_REPO is not set; tracking issues are disabled for this run")
    return ScanRunner(
        provider=api,
        store=CacheStore(args.cache_dir),
        report_generator=ReportGenerator(args.report_dir),
        tracker=tracker,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Run a scan. Returns the process exit code."""
    global _token, _interrupted

    settings = Settings()
    args = parse_args(argv, settings)
    configure_logging(args.verbose, args.debug)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    _interrupted = False
    _token = CancelToken(deadline_seconds=args.deadline_minutes * 60 if args.deadline_minutes else None)

    api = GitHubAPI(
        token=args.token or settings.GITHUB_TOKEN,
        base_url=settings.GITHUB_API,
        max_retries=settings.HTTP_MAX_RETRIES,
        timeout=settings.HTTP_TIMEOUT,
    )
    options = RunOptions(
        organizations=args.orgs or settings.organizations,
        clear_cache=args.clear_cache,
        force=args.force,
        tracking=not args.no_tracking,
        create_issues=args.create_issues,
        max_workers=args.max_workers,
        cache_ttl=timedelta(hours=settings.CACHE_TTL_HOURS),
        inactivity_days=settings.INACTIVITY_DAYS,
        repo_limit=settings.REPO_LIMIT,
        lists_dir=settings.LISTS_DIR,
        fetch_max_attempts=settings.FETCH_MAX_ATTEMPTS,
        fetch_backoff_base=settings.FETCH_BACKOFF_BASE,
        fetch_backoff_factor=settings.FETCH_BACKOFF_FACTOR,
    )

    try:
        detectors = build_detectors([args.detector], api=api, check_minor=args.check_minor,
                                    ubi_image=args.ubi_version)
        result = build_runner(args, settings, api).run(detectors, options, token=_token)
    except OperationalFailure as e:
        logger.error("❌ %s", e)
        return EXIT_FAILURE
    except ProviderError as e:
        logger.error("❌ GitHub request failed; caches were not updated: %s", e)
        return EXIT_FAILURE

    report = result.report
    print(f"Scanned {len(report.repositories)} repositories; "
          f"{len(report.non_compliant())} non-compliant, {len(report.failures)} could not be evaluated.")
    for path in result.report_paths.values():
        print(f"Report: {path}")

    if report.incomplete and _token.reason == "interrupted":
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
