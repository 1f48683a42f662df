#!/usr/bin/env python
import sys
import logging
import argparse
from datetime import datetime
from typing import Callable, List, Optional

from config import load_config, Config
from db import PlaceStore
from scripts.place_sync.config_resolver import resolve_fetch_settings, resolve_thresholds
from scripts.place_sync.dedup import DeduplicationEngine, ReviewDecision
from scripts.place_sync.errors import PlaceSyncError, ConfigurationError
from scripts.place_sync.grid_fetcher import GridFetcher, grid_label
from scripts.place_sync.logging_ext import JSONLWriter, RunSummary
from scripts.place_sync.models import CandidateRecord, MatchResult, StagingBatch
from scripts.place_sync.places_client import GooglePlacesClient
from scripts.place_sync.publisher import PublishWorkflow
from scripts.place_sync.reference import load_reference_csv
from scripts.place_sync.retention import RetentionGuard, SOFT_DELETE
from scripts.place_sync.staging import StagingGate

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False, log_file: str = 'place_sync.log'):
    """Console + file logging for a CLI run"""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


class PlaceSyncOrchestrator:
    """Operator-facing glue: prompts, batch selection and confirmation gates"""

    def __init__(self, config: Config, args: argparse.Namespace,
                 prompt: Callable[[str], str] = input,
                 stores: Optional[dict] = None,
                 places_client: Optional[GooglePlacesClient] = None):
        self.config = config
        self.args = args
        self.prompt = prompt
        self.start_time = datetime.now()
        self.summary = RunSummary()
        self._stores = dict(stores or {})
        self._places_client = places_client
        self.staging = StagingGate(
            config.store.staging_dir,
            review_log=JSONLWriter(config.store.review_log),
        )

    # =============================================================================
    # OPERATOR INTERACTION
    # =============================================================================

    def confirm(self, question: str) -> bool:
        if getattr(self.args, 'yes', False):
            logger.info(f"{question} yes (--yes)")
            return True
        answer = self.prompt(f"{question} (yes/no): ").strip().lower()
        return answer in ('y', 'yes')

    def resolve_borderline(self, candidate: CandidateRecord, match: MatchResult) -> ReviewDecision:
        """Show a borderline match and ask whether both records are the same place"""
        target = match.matched_against
        print("\n" + "-" * 50)
        print(f"Borderline match ({match.distance_meters:.0f}m apart, "
              f"name {match.name_score:.0%}, address {match.address_score:.0%})")
        print(f"  Fetched:  {candidate.name}")
        print(f"            {candidate.address}")
        if target is not None:
            print(f"  Existing: {target.name}")
            print(f"            {target.address}")
        answer = self.prompt("Same place? (y = duplicate, n = keep as new): ").strip().lower()
        return ReviewDecision.ACCEPT if answer in ('y', 'yes') else ReviewDecision.REJECT

    @property
    def interactive(self) -> bool:
        return not getattr(self.args, 'yes', False)

    def store(self, environment: str):
        if environment not in self._stores:
            self._stores[environment] = PlaceStore.for_environment(environment)
        return self._stores[environment]

    def select_batch(self) -> StagingBatch:
        """Batch from --batch, or picked from the staging directory"""
        if getattr(self.args, 'batch', None):
            return self.staging.load(self.args.batch)

        files = self.staging.list_batches()
        if not files:
            raise ConfigurationError("No staging files found. Run fetch first.")
        if not self.interactive:
            logger.info(f"Using newest staging file {files[0]}")
            return self.staging.load(files[0])

        print("\nStaging files found:")
        for i, path in enumerate(files, 1):
            print(f"  {i}. {path}")
        choice = self.prompt("\nEnter file number: ").strip()
        try:
            return self.staging.load(files[int(choice) - 1])
        except (ValueError, IndexError):
            raise ConfigurationError(f"Invalid selection: {choice}")

    # =============================================================================
    # MODES
    # =============================================================================

    def run_fetch(self) -> bool:
        """Grid fetch → dedup → staging artifact"""
        if not self.args.city:
            raise ConfigurationError("--city is required for fetch")
        city = self.config.get_city(self.args.city)
        settings = resolve_fetch_settings(self.args, self.config.fetch)
        thresholds = resolve_thresholds(self.args, self.config.dedup)
        source = self.config.sources.get('google_places', 'google_places')
        if self.args.grid == 0:
            grid_size = settings.default_grid_size
        else:
            grid_size = self.args.grid or 1

        client = self._places_client or GooglePlacesClient(
            self.config.google_places_api_key,
            search_query=settings.search_query,
            language_code=settings.language_code,
            page_size=settings.page_size,
            timeout_s=settings.request_timeout_s,
        )
        dev = self.store('dev')

        logger.info(f"🏙️  Fetching {city.name} ({grid_label(grid_size)}, "
                    f"{'refresh' if self.args.refresh else 'new only'}, limit {settings.max_results})")
        fetch_result = GridFetcher(client, settings).fetch(city.bounds, grid_size, settings.max_results)
        self.summary.record_fetch(fetch_result)

        records = fetch_result.places
        if settings.min_rating is not None:
            records = [r for r in records if r.rating is not None and r.rating >= settings.min_rating]
            self.summary.below_min_rating = len(fetch_result.places) - len(records)

        if not records:
            print("No places found from Google.")
            return True

        candidates = [
            CandidateRecord.from_external(r, source, self.config.category_for(r.primary_type))
            for r in records
        ]

        reference_path = self.config.reference_path(city.city_id)
        reference = load_reference_csv(reference_path) if reference_path else []
        existing = dev.get_places(city_id=city.city_id)
        existing_keys = dev.get_existing_keys(source)

        engine = DeduplicationEngine(thresholds, self.config.normalization)
        dedup_result = engine.deduplicate(candidates, reference=reference,
                                          existing=existing, existing_keys=existing_keys)
        self.summary.record_dedup(dedup_result)

        batch = self.staging.create_batch(
            city_id=city.city_id,
            source=source,
            refresh=self.args.refresh,
            grid_label=grid_label(grid_size),
            seen_source_ids=[c.source_id for c in candidates],
            fetch_complete=fetch_result.is_complete,
            search_query=settings.search_query,
            categories=[self.config.category_for(r.primary_type) for r in fetch_result.places],
        )
        self.staging.stage(batch, dedup_result)

        if not fetch_result.is_complete:
            print(f"\n** WARNING: fetch incomplete (limit reached: {fetch_result.limit_reached}, "
                  f"failed cells: {len(fetch_result.failed_cells)}). There may be more places. **")

        if batch.pending_review and self.interactive:
            print(f"\n{len(batch.pending_review)} borderline matches need review:")
            self.staging.review(batch, self.resolve_borderline)

        self.summary.staged = len(batch.places)
        if not batch.places and not batch.pending_review:
            print("\nNo new places to review. Database is up to date.")
            return True

        if self.confirm(f"\nSave {len(batch.places)} places to staging?"):
            path = self.staging.save(batch)
            print(f"\nStaging file saved:\n  {path}")
            if batch.pending_review:
                print(f"  {len(batch.pending_review)} borderline matches still pending - run --mode review")
        return True

    def run_review(self) -> bool:
        batch = self.select_batch()
        if not batch.pending_review:
            print(f"Batch {batch.batch_id} has nothing pending review.")
            return True
        if not self.interactive:
            raise ConfigurationError("Review needs an operator; run without --yes")
        self.staging.review(batch, self.resolve_borderline)
        self.staging.save(batch)
        return True

    def _workflow(self, environment: str) -> PublishWorkflow:
        workflow = PublishWorkflow(self.store(environment), default_category=self.config.default_category)
        workflow.prepare_store(self.config.cities, self.config.categories)
        return workflow

    def run_publish(self) -> bool:
        """Publish to dev, then offer promotion to prod"""
        batch = self.staging.ready_for_publish(self.select_batch())
        print(f"\nPublishing {batch.batch_id}: {len(batch.places)} places, mode {batch.mode}")

        workflow = self._workflow('dev')
        result = workflow.publish(batch, force_staleness=self.args.force_staleness)
        self.summary.record_publish(result)
        self.staging.record_publish(batch, 'dev', result)
        if result.staleness_skipped:
            self.summary.add_note(f"Staleness skipped: {result.staleness_skipped}")

        if result.errors:
            self.summary.add_note("Dev publish had errors - not offering prod promotion")
            return False

        if self.config.has_environment('prod'):
            if not self.confirm("\nPush to PROD as well?"):
                print(f"Staging file kept for --mode promote --batch {batch.batch_id}")
                return True
            if not self._promote(batch, workflow):
                return False
        self._offer_cleanup(batch)
        return True

    def run_promote(self) -> bool:
        batch = self.staging.ready_for_publish(self.select_batch())
        if not batch.published_cleanly('dev'):
            raise ConfigurationError(
                f"Batch {batch.batch_id} has no error-free dev publish. Run --mode publish first.")
        if not self.confirm(f"\nPromote {batch.batch_id} ({len(batch.places)} places) to PROD?"):
            print("Promotion cancelled.")
            return True
        workflow = PublishWorkflow(self.store('dev'), default_category=self.config.default_category)
        if not self._promote(batch, workflow):
            return False
        self._offer_cleanup(batch)
        return True

    def _promote(self, batch: StagingBatch, workflow: PublishWorkflow) -> bool:
        result = workflow.promote(batch, self.store('prod'), self.config.cities, self.config.categories,
                                  force_staleness=self.args.force_staleness)
        self.summary.record_publish(result)
        self.staging.record_publish(batch, 'prod', result)
        return result.errors == 0

    def _offer_cleanup(self, batch: StagingBatch):
        if self.confirm(f"\nDelete staging file {batch.batch_id}?"):
            self.staging.delete(batch)

    def run_remove(self) -> bool:
        if not self.args.source_id:
            raise ConfigurationError("--source-id is required for remove")
        source = self.args.source or self.config.sources.get('google_places', 'google_places')
        store = self.store(self.args.env)
        if not self.confirm(f"\nRemove {source}/{self.args.source_id} from {self.args.env}?"):
            return True

        workflow = PublishWorkflow(store, default_category=self.config.default_category)
        outcome = workflow.remove_place(source, self.args.source_id, self.args.reason, RetentionGuard(store))
        if outcome is None:
            return False
        if outcome == SOFT_DELETE:
            self.summary.soft_deleted += 1
        else:
            self.summary.hard_deleted += 1
        return True

    def run_list(self) -> bool:
        files = self.staging.list_batches()
        if not files:
            print("No staging files found.")
        for path in files:
            batch = self.staging.load(path)
            published = ', '.join(sorted(batch.published)) or 'none'
            print(f"  {path} ({len(batch.places)} places, {len(batch.pending_review)} pending, "
                  f"mode {batch.mode}, published: {published})")
        return True

    def run(self) -> bool:
        modes = {
            'fetch': self.run_fetch,
            'review': self.run_review,
            'publish': self.run_publish,
            'promote': self.run_promote,
            'remove': self.run_remove,
            'list': self.run_list,
        }
        try:
            return modes[self.args.mode]()
        finally:
            if self.staging.review_log:
                self.staging.review_log.close()

    def print_final_summary(self):
        duration = datetime.now() - self.start_time
        self.summary.add_note(f"Duration: {duration}")
        self.summary.print_summary()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Place Sync Pipeline - fetch, deduplicate, stage and publish places',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Fetch specialty coffee in Madrid with a 6x6 grid, new places only
  python3 run_pipeline.py --mode fetch --city madrid --grid

  # Refresh an existing city (stages updates, marks unseen places inactive on publish)
  python3 run_pipeline.py --mode fetch --city madrid --grid 4 --refresh

  # Review pending borderline matches, publish to dev, promote to prod
  python3 run_pipeline.py --mode review
  python3 run_pipeline.py --mode publish
  python3 run_pipeline.py --mode promote --batch google-places-madrid-grid6x6-new-2026-01-22T16-35-26-029Z

  # Remove a place (soft delete if it has user content)
  python3 run_pipeline.py --mode remove --source-id ChIJ... --reason "closed"
        """
    )

    parser.add_argument('--mode', choices=['fetch', 'review', 'publish', 'promote', 'remove', 'list'],
                        default='fetch', help='Pipeline step to run')
    parser.add_argument('--config', help='Path to config.json')
    parser.add_argument('--yes', action='store_true', help='Answer yes to confirmations (non-interactive)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    # Fetch arguments
    parser.add_argument('--city', help='City id from config.json (e.g. madrid)')
    parser.add_argument('--grid', type=int, nargs='?', const=0,
                        help='Grid search with N×N cells (config default when given without a value)')
    parser.add_argument('--limit', type=int, help='Maximum places to fetch')
    parser.add_argument('--min-rating', type=float, help='Drop places rated below this')
    parser.add_argument('--refresh', action='store_true', help='Stage existing places for update')
    parser.add_argument('--workers', type=int, help='Concurrent grid cells (default 1)')
    parser.add_argument('--deadline', type=float, help='Stop starting new cells after N seconds')
    parser.add_argument('--query', help='Search text (default from config)')

    # Dedup threshold overrides
    parser.add_argument('--strong-distance-m', type=float)
    parser.add_argument('--max-distance-m', type=float)
    parser.add_argument('--address-threshold', type=float)
    parser.add_argument('--name-threshold', type=float)
    parser.add_argument('--far-name-threshold', type=float)
    parser.add_argument('--borderline-name-floor', type=float)
    parser.add_argument('--borderline-min-distance-m', type=float)

    # Publish / remove arguments
    parser.add_argument('--batch', help='Staging batch id or file path')
    parser.add_argument('--force-staleness', action='store_true',
                        help='Mark unseen places inactive even when the fetch was incomplete')
    parser.add_argument('--env', choices=['dev', 'prod'], default='dev', help='Store for remove')
    parser.add_argument('--source', help='Source of the place to remove (default google_places)')
    parser.add_argument('--source-id', help='Provider id of the place to remove')
    parser.add_argument('--reason', default='removed by operator', help='Removal reason')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)

    try:
        config = load_config(args.config)
        orchestrator = PlaceSyncOrchestrator(config, args)

        logger.info(f"🚀 STARTING PLACE SYNC ({args.mode})")
        success = orchestrator.run()
        orchestrator.print_final_summary()

        if success:
            logger.info("✅ PLACE SYNC COMPLETED SUCCESSFULLY")
            return 0
        logger.error("❌ PLACE SYNC FAILED - CHECK ERRORS ABOVE")
        return 1

    except KeyboardInterrupt:
        logger.info("\n⚠️  Interrupted by user")
        return 130
    except PlaceSyncError as e:
        logger.error(f"❌ {e}")
        return 1
    except Exception as e:
        logger.error(f"❌ CRITICAL ERROR: {e}")
        if logger.isEnabledFor(logging.DEBUG):
            import traceback
            logger.error(traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
