import pytest
from pydantic import ValidationError as SchemaError

from src.modules.schedule_items.schemas import ScheduleItemFilters
from src.shared.schemas import PageParams, PaginatedResponse


class TestPageParams:
    def test_offset(self):
        assert PageParams().offset == 0
        assert PageParams(page=3, limit=20).offset == 40

    def test_limit_is_capped(self):
        with pytest.raises(SchemaError):
            PageParams(limit=101)

    def test_list_filters_carry_paging(self):
        filters = ScheduleItemFilters(page=2, limit=10, status="active")
        assert filters.offset == 10


class TestPaginatedResponse:
    def test_page_count_rounds_up(self):
        page = PaginatedResponse[int].create(items=[1, 2], total=21, page=1, limit=10)
        assert page.pages == 3

    def test_empty(self):
        page = PaginatedResponse[int].create(items=[], total=0, page=1, limit=10)
        assert page.pages == 0
