"""
Tests for the fluent select builder.
"""

import pytest

from vertector_harperdb.executor import QueryOptions


@pytest.mark.unit
class TestQueryBuilder:
    """Test argument accumulation and execution."""

    def test_defaults(self, db):
        assert db.table("dog").to_select_kwargs() == {
            "where": None,
            "limit": None,
            "offset": None,
            "order_by": None,
            "order_direction": "asc",
            "schema": None,
            "options": None,
        }

    def test_chaining(self, db):
        options = QueryOptions(use_cache=False)
        kwargs = (
            db.table("dog")
            .where({"breed": "lab"})
            .order_by("age", "DESC")
            .limit(5)
            .offset(10)
            .in_schema("prod")
            .with_options(options)
            .to_select_kwargs()
        )
        assert kwargs["where"] == {"breed": "lab"}
        assert kwargs["order_direction"] == "desc"
        assert kwargs["limit"] == 5
        assert kwargs["offset"] == 10
        assert kwargs["schema"] == "prod"
        assert kwargs["options"] is options

    def test_invalid_arguments(self, db):
        with pytest.raises(ValueError):
            db.table("dog").limit(-1)
        with pytest.raises(ValueError):
            db.table("dog").offset(-1)
        with pytest.raises(ValueError):
            db.table("dog").order_by("age", "sideways")

    @pytest.mark.asyncio
    async def test_execute_with_where(self, db, transport):
        """Test that a where clause runs search_by_value in the chosen schema."""
        transport.queue([{"id": 1, "age": 9}, {"id": 2, "age": 4}])

        result = await db.table("dog").in_schema("prod").where({"breed": "lab"}).order_by("age").execute()

        assert transport.calls[0]["operation"] == "search_by_value"
        assert transport.calls[0]["schema"] == "prod"
        assert [r["id"] for r in result.data] == [2, 1]
