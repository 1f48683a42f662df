#!/usr/bin/env python3
"""
Grid Fetcher - covers a city bounding box with an N×N grid of search cells
Each cell is paginated up to the provider ceiling, results deduplicated by provider id
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from .models import BoundingBox, ExternalRecord
from .places_client import GooglePlacesClient, RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class FetchSettings:
    """Grid search configuration"""
    search_query: str = "specialty coffee"
    language_code: str = "en"
    default_grid_size: int = 6
    max_results: int = 5000
    page_size: int = 20
    max_pages_per_cell: int = 3
    page_delay_s: float = 0.3
    cell_delay_s: float = 0.5
    request_timeout_s: float = 30
    deadline_s: Optional[float] = None
    max_workers: int = 1
    min_rating: Optional[float] = None


@dataclass(frozen=True)
class GridCell:
    """One rectangle of the search grid"""
    row: int
    col: int
    bounds: BoundingBox

    @property
    def label(self) -> str:
        return f"r{self.row}c{self.col}"


@dataclass
class FetchResult:
    """Aggregated outcome of a grid fetch"""
    places: List[ExternalRecord] = field(default_factory=list)
    limit_reached: bool = False
    cells_total: int = 0
    cells_searched: int = 0
    failed_cells: List[str] = field(default_factory=list)
    pages_fetched: int = 0
    deadline_hit: bool = False

    @property
    def is_complete(self) -> bool:
        """False when the cap, a failed cell or the deadline may have hidden places"""
        return not (self.limit_reached or self.failed_cells or self.deadline_hit)

    @property
    def seen_ids(self) -> List[str]:
        return [p.place_id for p in self.places]


def create_grid(bounds: BoundingBox, grid_size: int) -> List[GridCell]:
    """Split bounds into grid_size × grid_size equal cells, row-major from the south-west corner"""
    if grid_size < 1:
        raise ValueError(f"Grid size must be at least 1, got {grid_size}")
    bounds.validate()

    lat_step = (bounds.north - bounds.south) / grid_size
    lon_step = (bounds.east - bounds.west) / grid_size

    cells = []
    for row in range(grid_size):
        for col in range(grid_size):
            cells.append(GridCell(
                row=row,
                col=col,
                bounds=BoundingBox(
                    south=bounds.south + row * lat_step,
                    north=bounds.south + (row + 1) * lat_step,
                    west=bounds.west + col * lon_step,
                    east=bounds.west + (col + 1) * lon_step,
                ),
            ))
    return cells


def grid_label(grid_size: int) -> str:
    """Label used in staging artifact names"""
    return f"grid{grid_size}x{grid_size}" if grid_size > 1 else "single"


class GridFetcher:
    """Runs a grid search through a GooglePlacesClient"""

    def __init__(self, client: GooglePlacesClient, settings: Optional[FetchSettings] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.settings = settings or FetchSettings()
        self.sleep = sleep
        self.clock = clock
        self._pages_fetched = 0
        self._pages_lock = threading.Lock()

        if self.settings.max_workers > 1 and self.client.rate_limiter is None:
            # all workers share one request budget
            self.client.rate_limiter = RateLimiter(self.settings.page_delay_s)

    def fetch_cell(self, cell: GridCell) -> List[ExternalRecord]:
        """Paginate one cell; raises on any page failure"""
        records: List[ExternalRecord] = []
        page_token = None

        for page_number in range(self.settings.max_pages_per_cell):
            if page_number > 0:
                self.sleep(self.settings.page_delay_s)
            page = self.client.search_page(cell.bounds, page_token)
            with self._pages_lock:
                self._pages_fetched += 1
            records.extend(page.records)
            page_token = page.next_page_token
            if not page_token:
                break

        return records

    def fetch(self, bounds: BoundingBox, grid_size: Optional[int] = None,
              limit: Optional[int] = None) -> FetchResult:
        """
        Search every cell of the grid and merge the results

        Args:
            bounds: City bounding box
            grid_size: N for an N×N grid, 1 for a single search
            limit: Result cap; fetching stops once it is reached

        Returns:
            FetchResult with unique places (at most limit of them)
        """
        grid_size = grid_size or self.settings.default_grid_size
        limit = limit or self.settings.max_results
        cells = create_grid(bounds, grid_size)

        self._pages_fetched = 0
        self._started = self.clock()
        result = FetchResult(cells_total=len(cells))
        seen_ids: Set[str] = set()

        logger.info(f"🔍 Grid search: {grid_size}×{grid_size} = {len(cells)} cells, limit {limit}")

        if self.settings.max_workers > 1 and len(cells) > 1:
            outcomes = self._fetch_concurrent(cells)
        else:
            outcomes = self._fetch_sequential(cells)

        for cell, records, error in outcomes:
            if records is None and error is None:
                result.deadline_hit = True
                break

            result.cells_searched += 1
            if error is not None:
                logger.error(f"Cell {cell.label} failed: {error}")
                result.failed_cells.append(cell.label)
                continue

            new_count = 0
            for record in records:
                if record.place_id in seen_ids:
                    continue
                seen_ids.add(record.place_id)
                result.places.append(record)
                new_count += 1
                if len(result.places) >= limit:
                    result.limit_reached = True
                    break

            logger.info(f"Cell {result.cells_searched}/{len(cells)} ({cell.label}): "
                        f"{len(records)} found, {new_count} new (total: {len(result.places)})")

            if result.limit_reached:
                logger.warning(f"Limit of {limit} reached after {result.cells_searched} cells")
                break
        outcomes.close()

        result.pages_fetched = self._pages_fetched
        if result.deadline_hit:
            logger.warning(f"Fetch deadline of {self.settings.deadline_s}s hit after "
                           f"{result.cells_searched}/{len(cells)} cells")
        return result

    def _deadline_passed(self) -> bool:
        deadline = self.settings.deadline_s
        return deadline is not None and self.clock() - self._started >= deadline

    def _fetch_sequential(self, cells: List[GridCell]):
        """Yield (cell, records, error); (cell, None, None) means the deadline stopped the run"""
        for index, cell in enumerate(cells):
            if self._deadline_passed():
                yield cell, None, None
                return
            if index > 0:
                self.sleep(self.settings.cell_delay_s)
            try:
                yield cell, self.fetch_cell(cell), None
            except Exception as e:
                yield cell, [], e

    def _fetch_concurrent(self, cells: List[GridCell]):
        """Bounded worker pool; results are yielded in cell order"""

        def run(cell: GridCell):
            if self._deadline_passed():
                return None, None
            try:
                return self.fetch_cell(cell), None
            except Exception as e:
                return [], e

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures = [(cell, executor.submit(run, cell)) for cell in cells]
            try:
                for cell, future in futures:
                    records, error = future.result()
                    yield cell, records, error
            finally:
                # cap or deadline stopped consumption early
                for _, future in futures:
                    future.cancel()
