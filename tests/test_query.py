"""Tests for task filtering, sorting and pagination."""

import pytest

from taskboard.core.query import Pagination, TaskFilter, build_order_by
from taskboard.errors import ValidationError


def _titles(service, user, **kwargs):
    page = service.find_all(user, TaskFilter(**kwargs), Pagination(limit=100))
    return [t.title for t in page.tasks]


class TestTaskFilter:
    def test_from_mapping_parses_types(self):
        f = TaskFilter.from_mapping(
            {"status": "todo", "is_blocked": "true", "my_tasks": "0", "estimated_hours_min": "2.5", "page": "3"}
        )
        assert f.status == "todo"
        assert f.is_blocked is True
        assert f.my_tasks is False
        assert f.estimated_hours_min == 2.5

    def test_from_mapping_skips_empty(self):
        f = TaskFilter.from_mapping({"status": "", "priority": None})
        assert f.status is None and f.priority is None

    def test_bad_number_rejected(self):
        with pytest.raises(ValidationError):
            TaskFilter.from_mapping({"estimated_hours_max": "lots"})

    def test_cache_part_is_canonical(self):
        a = TaskFilter(status="todo", priority="high")
        b = TaskFilter(priority="high", status="todo")
        assert a.cache_part() == b.cache_part()
        assert a.cache_part() != TaskFilter(status="done").cache_part()


class TestPagination:
    def test_defaults(self):
        p = Pagination()
        assert (p.page, p.limit, p.offset) == (1, 10, 0)

    def test_offset(self):
        assert Pagination(page=3, limit=20).offset == 40

    def test_coerces_strings(self):
        assert Pagination(page="2", limit="5").offset == 5

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 101), ("x", 10)])
    def test_invalid(self, page, limit):
        with pytest.raises(ValidationError):
            Pagination(page=page, limit=limit)


class TestOrderBy:
    def test_always_tie_breaks_on_created_at(self):
        assert build_order_by(TaskFilter(sort_field="title")).endswith("t.created_at DESC, t.rowid DESC")

    def test_unknown_field_falls_back(self):
        assert build_order_by(TaskFilter(sort_field="drop table")).startswith("t.created_at DESC")

    def test_sort_order_is_normalized(self):
        assert build_order_by(TaskFilter(sort_field="position", sort_order="asc")).startswith("t.position ASC")
        assert build_order_by(TaskFilter(sort_field="position", sort_order="sideways")).startswith("t.position DESC")


class TestFilters:
    def test_status_and_priority(self, service, users):
        service.create({"title": "A", "status": "todo", "priority": "high"}, users.alice)
        service.create({"title": "B", "status": "todo", "priority": "low"}, users.alice)
        service.create({"title": "C", "status": "done", "priority": "high"}, users.alice)
        assert _titles(service, users.alice, status="todo", priority="high") == ["A"]

    def test_unknown_enum_matches_nothing(self, service, users, caplog):
        service.create({"title": "A"}, users.alice)
        assert _titles(service, users.alice, status="finished") == []
        assert "Unrecognized status filter value" in caplog.text

    def test_search_title_and_description(self, service, users):
        service.create({"title": "Login page", "description": ""}, users.alice)
        service.create({"title": "Other", "description": "Fix LOGIN redirect"}, users.alice)
        service.create({"title": "Unrelated"}, users.alice)
        assert sorted(_titles(service, users.alice, search="login")) == ["Login page", "Other"]

    def test_search_escapes_wildcards(self, service, users):
        service.create({"title": "100% done"}, users.alice)
        service.create({"title": "1000 rows"}, users.alice)
        service.create({"title": "snake_case"}, users.alice)
        service.create({"title": "snakeXcase"}, users.alice)
        assert _titles(service, users.alice, search="100%") == ["100% done"]
        assert _titles(service, users.alice, search="e_c") == ["snake_case"]

    def test_search_folds_non_ascii_case(self, service, users):
        service.create({"title": "Émile report"}, users.alice)
        service.create({"title": "Notes", "description": "Straße closure"}, users.alice)
        service.create({"title": "Emile without accent"}, users.alice)
        assert _titles(service, users.alice, search="émile") == ["Émile report"]
        assert _titles(service, users.alice, search="STRASSE") == ["Notes"]

    def test_overdue(self, service, users):
        service.create({"title": "Late", "due_date": "2026-01-01T00:00:00Z"}, users.alice)
        service.create({"title": "Late but done", "status": "done", "due_date": "2026-01-01T00:00:00Z"}, users.alice)
        service.create({"title": "Future", "due_date": "2027-01-01T00:00:00Z"}, users.alice)
        service.create({"title": "No date"}, users.alice)
        assert _titles(service, users.alice, is_overdue=True) == ["Late"]

    def test_due_date_range(self, service, users):
        service.create({"title": "Jan", "due_date": "2026-01-15T00:00:00Z"}, users.alice)
        service.create({"title": "Feb", "due_date": "2026-02-15T00:00:00Z"}, users.alice)
        service.create({"title": "Mar", "due_date": "2026-03-15T00:00:00Z"}, users.alice)
        titles = _titles(service, users.alice, due_date_from="2026-02-01", due_date_to="2026-02-28")
        assert titles == ["Feb"]

    def test_invalid_date_rejected(self, service, users):
        with pytest.raises(ValidationError):
            service.find_all(users.alice, TaskFilter(due_date_from="someday"))

    def test_estimated_hours_range(self, service, users):
        service.create({"title": "Small", "estimated_hours": 1}, users.alice)
        service.create({"title": "Medium", "estimated_hours": 4}, users.alice)
        service.create({"title": "Large", "estimated_hours": 16}, users.alice)
        service.create({"title": "Unknown"}, users.alice)
        assert _titles(service, users.alice, estimated_hours_min=2, estimated_hours_max=8) == ["Medium"]

    def test_labels_match_any(self, service, users):
        service.create({"title": "UI", "labels": ["ui"]}, users.alice)
        service.create({"title": "API", "labels": ["api", "backend"]}, users.alice)
        service.create({"title": "Docs", "labels": ["docs"]}, users.alice)
        assert sorted(_titles(service, users.alice, labels="ui, api")) == ["API", "UI"]

    def test_unassigned_and_assignee(self, service, users):
        service.create({"title": "Free"}, users.alice)
        service.create({"title": "Bob's", "assignee_id": users.bob.id}, users.alice)
        assert _titles(service, users.alice, unassigned=True) == ["Free"]
        assert _titles(service, users.alice, assignee_id=users.bob.id) == ["Bob's"]

    def test_created_by(self, service, users):
        service.create({"title": "By Alice"}, users.alice)
        service.create({"title": "By Bob"}, users.bob)
        assert _titles(service, users.admin, created_by_id=users.bob.id) == ["By Bob"]

    def test_visibility_cannot_be_widened_by_filters(self, service, users):
        service.create({"title": "Bob's secret"}, users.bob)
        assert _titles(service, users.alice, created_by_id=users.bob.id) == []


class TestSorting:
    def test_due_date_nulls_last(self, service, users):
        service.create({"title": "None"}, users.alice)
        service.create({"title": "Late", "due_date": "2026-05-01T00:00:00Z"}, users.alice)
        service.create({"title": "Early", "due_date": "2026-04-01T00:00:00Z"}, users.alice)
        assert _titles(service, users.alice, sort_field="due_date", sort_order="ASC") == ["Early", "Late", "None"]
        assert _titles(service, users.alice, sort_field="due_date", sort_order="DESC") == ["Late", "Early", "None"]

    def test_priority_ascending(self, service, users):
        for p in ("high", "low", "critical"):
            service.create({"title": p, "priority": p}, users.alice)
        assert _titles(service, users.alice, sort_field="priority", sort_order="ASC") == ["low", "high", "critical"]

    def test_title_case_insensitive(self, service, users):
        for title in ("banana", "Apple", "cherry"):
            service.create({"title": title}, users.alice)
        assert _titles(service, users.alice, sort_field="title", sort_order="ASC") == ["Apple", "banana", "cherry"]

    def test_pages_do_not_overlap(self, service, users):
        for i in range(7):
            service.create({"title": f"T{i}", "priority": "high"}, users.alice)
        seen = []
        for page in (1, 2, 3):
            result = service.find_all(users.alice, TaskFilter(sort_field="priority"), Pagination(page=page, limit=3))
            seen.extend(t.id for t in result.tasks)
        assert len(seen) == 7
        assert len(set(seen)) == 7
