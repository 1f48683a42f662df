#!/usr/bin/env python3
"""
Tests for the grid fetcher
Grid geometry, pagination, cross-cell dedup, cap, cell failures and deadline
"""
from unittest.mock import Mock

import pytest

from scripts.place_sync.errors import ConfigurationError, FetchError
from scripts.place_sync.grid_fetcher import FetchSettings, GridFetcher, create_grid, grid_label
from scripts.place_sync.models import BoundingBox, ExternalRecord
from scripts.place_sync.places_client import RateLimiter, SearchPage

BOUNDS = BoundingBox(south=40.0, north=41.0, west=-4.0, east=-3.0)


def record(place_id: str) -> ExternalRecord:
    return ExternalRecord(place_id=place_id, name=place_id, address='', lat=40.5, lon=-3.5)


def cell_key(bounds: BoundingBox):
    return round(bounds.south, 6), round(bounds.west, 6)


class TestCreateGrid:
    """Grid geometry"""

    def test_cell_count_and_order(self):
        cells = create_grid(BOUNDS, 3)
        assert len(cells) == 9
        assert [c.label for c in cells[:4]] == ['r0c0', 'r0c1', 'r0c2', 'r1c0']

    def test_cells_tile_the_box(self):
        cells = create_grid(BOUNDS, 2)
        first, last = cells[0].bounds, cells[-1].bounds
        assert (first.south, first.west) == (40.0, -4.0)
        assert (first.north, first.east) == (40.5, -3.5)
        assert (last.north, last.east) == (41.0, -3.0)
        total_area = sum(c.bounds.polygon.area for c in cells)
        assert total_area == pytest.approx(BOUNDS.polygon.area)

    def test_single_cell_is_the_box(self):
        assert create_grid(BOUNDS, 1)[0].bounds == BOUNDS

    def test_invalid_inputs(self):
        with pytest.raises(ValueError):
            create_grid(BOUNDS, 0)
        with pytest.raises(ConfigurationError):
            create_grid(BoundingBox(south=41.0, north=40.0, west=-4.0, east=-3.0), 2)

    def test_grid_label(self):
        assert grid_label(6) == 'grid6x6'
        assert grid_label(1) == 'single'


class TestGridFetcher:
    """Fetching through a mocked Places client"""

    def setup_method(self):
        self.client = Mock()
        self.client.rate_limiter = None
        self.sleep = Mock()
        self.settings = FetchSettings(default_grid_size=2, max_results=100, max_pages_per_cell=3,
                                      page_delay_s=0.3, cell_delay_s=0.5)

    def fetcher(self, **kwargs) -> GridFetcher:
        return GridFetcher(self.client, self.settings, sleep=self.sleep, **kwargs)

    def serve_cells(self, per_cell, failing=()):
        """Each cell returns one page built by per_cell(key); cells in `failing` raise"""
        def search_page(bounds, page_token=None):
            key = cell_key(bounds)
            if key in failing:
                raise FetchError("HTTP 403")
            return SearchPage(records=per_cell(key))
        self.client.search_page.side_effect = search_page

    def test_dedups_across_cells(self):
        self.serve_cells(lambda key: [record('shared'), record(f'own-{key}')])
        result = self.fetcher().fetch(BOUNDS)

        assert len(result.places) == 5
        assert len({p.place_id for p in result.places}) == 5
        assert result.cells_total == 4
        assert result.cells_searched == 4
        assert result.is_complete

    def test_cell_delay_between_cells(self):
        self.serve_cells(lambda key: [])
        self.fetcher().fetch(BOUNDS)
        assert self.sleep.call_count == 3
        self.sleep.assert_called_with(0.5)

    def test_pagination_follows_token(self):
        self.client.search_page.side_effect = [
            SearchPage(records=[record('a')], next_page_token='t1'),
            SearchPage(records=[record('b')], next_page_token=None),
        ]
        result = self.fetcher().fetch(BOUNDS, grid_size=1)

        assert result.seen_ids == ['a', 'b']
        assert result.pages_fetched == 2
        assert self.client.search_page.call_args_list[1][0] == (BOUNDS, 't1')
        self.sleep.assert_called_once_with(0.3)

    def test_pagination_capped_per_cell(self):
        counter = iter(range(100))
        self.client.search_page.side_effect = lambda bounds, token=None: SearchPage(
            records=[record(f'p{next(counter)}')], next_page_token='more')
        result = self.fetcher().fetch(BOUNDS, grid_size=1)

        assert self.client.search_page.call_count == 3
        assert len(result.places) == 3

    def test_limit_truncates_and_flags(self):
        self.client.search_page.return_value = SearchPage(records=[record(str(i)) for i in range(5)])
        result = self.fetcher().fetch(BOUNDS, grid_size=1, limit=3)

        assert result.seen_ids == ['0', '1', '2']
        assert result.limit_reached
        assert not result.is_complete

    def test_limit_stops_remaining_cells(self):
        self.serve_cells(lambda key: [record(f'{key}-1'), record(f'{key}-2')])
        result = self.fetcher().fetch(BOUNDS, limit=3)

        assert len(result.places) == 3
        assert result.cells_searched == 2
        assert self.client.search_page.call_count == 2

    def test_failed_cell_does_not_abort(self):
        failing = {cell_key(create_grid(BOUNDS, 2)[1].bounds)}
        self.serve_cells(lambda key: [record(f'{key}')], failing=failing)
        result = self.fetcher().fetch(BOUNDS)

        assert result.failed_cells == ['r0c1']
        assert result.cells_searched == 4
        assert len(result.places) == 3
        assert not result.limit_reached
        assert not result.is_complete

    def test_deadline_stops_before_next_cell(self):
        self.settings.deadline_s = 10
        self.serve_cells(lambda key: [record(f'{key}')])
        clock = Mock(side_effect=[0, 0, 5, 11])
        result = self.fetcher(clock=clock).fetch(BOUNDS)

        assert result.deadline_hit
        assert result.cells_searched == 2
        assert len(result.places) == 2
        assert not result.is_complete

    def test_concurrent_matches_sequential_order(self):
        self.serve_cells(lambda key: [record(f'{key}')])
        sequential = self.fetcher().fetch(BOUNDS)

        self.settings.max_workers = 4
        self.settings.page_delay_s = 0
        concurrent = self.fetcher().fetch(BOUNDS)

        assert concurrent.seen_ids == sequential.seen_ids
        assert concurrent.cells_searched == 4
        assert isinstance(self.client.rate_limiter, RateLimiter)

    def test_concurrent_failed_cell(self):
        self.settings.max_workers = 2
        self.settings.page_delay_s = 0
        failing = {cell_key(create_grid(BOUNDS, 2)[3].bounds)}
        self.serve_cells(lambda key: [record(f'{key}')], failing=failing)
        result = self.fetcher().fetch(BOUNDS)

        assert result.failed_cells == ['r1c1']
        assert len(result.places) == 3

    def test_concurrent_page_count(self):
        self.settings.max_workers = 4
        self.settings.page_delay_s = 0
        next_token = {None: 't1', 't1': 't2', 't2': None}

        def search_page(bounds, page_token=None):
            return SearchPage(records=[record(f'{cell_key(bounds)}-{page_token}')],
                              next_page_token=next_token[page_token])
        self.client.search_page.side_effect = search_page
        result = self.fetcher().fetch(BOUNDS, grid_size=3)

        assert result.pages_fetched == 27
        assert len(result.places) == 27
