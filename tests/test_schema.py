"""
Tests for GraphQL SDL parsing, schema file validation and apply_schema.
"""

import pytest

from vertector_harperdb.client import SchemaApplyResult
from vertector_harperdb.errors import PermanentTransportError, SchemaFileError
from vertector_harperdb.schema import (
    SchemaType,
    load_schema_file,
    parse_graphql_schema,
    seed_record,
    validate_schema_file,
)

DOG_SDL = """
# Kennel tables
type Dog @table(database: "kennel") {
    dog_id: ID! @primaryKey
    name: String! @indexed
    age: Int
    adopted: Boolean!
}

type Breed @table(database: "kennel", replicate: false) {
    id: ID!
    label: String @indexed
}

type Query {
    dogs: [Dog]
}

type Orphan @table {
    id: ID!
}
"""


# ============================================================================
# Parser Tests
# ============================================================================

@pytest.mark.unit
class TestParseGraphQLSchema:
    """Test extraction of @table types."""

    def test_tables_found(self):
        """Test that only @table types with a database are returned, in order."""
        types = parse_graphql_schema(DOG_SDL)
        assert [t.qualified_name for t in types] == ["kennel.Dog", "kennel.Breed"]

    def test_explicit_primary_key(self):
        dog = parse_graphql_schema(DOG_SDL)[0]
        assert dog.hash_attribute == "dog_id"
        assert dog.fields[0].is_primary_key is True

    def test_id_fallback_primary_key(self):
        """Test that a field named id becomes the primary key."""
        breed = parse_graphql_schema(DOG_SDL)[1]
        assert breed.hash_attribute == "id"
        assert breed.replicate is False

    def test_field_flags(self):
        dog = parse_graphql_schema(DOG_SDL)[0]
        fields = {f.name: f for f in dog.fields}
        assert fields["name"].type == "String"
        assert fields["name"].is_indexed is True
        assert fields["name"].is_required is True
        assert fields["age"].is_required is False

    def test_indexed_fields_exclude_primary_key(self):
        dog = parse_graphql_schema(DOG_SDL)[0]
        assert [f.name for f in dog.indexed_fields()] == ["name"]

    def test_type_without_primary_key_skipped(self):
        sdl = 'type Log @table(database: "ops") {\n  message: String\n}'
        assert parse_graphql_schema(sdl) == []


@pytest.mark.unit
class TestSeedRecord:
    """Test placeholder records used to materialize attributes."""

    def test_placeholder_values(self):
        dog = parse_graphql_schema(DOG_SDL)[0]
        record = seed_record(dog)
        assert record == {
            "dog_id": "__temp_schema_init__",
            "name": "",
            "age": None,
            "adopted": False,
        }

    def test_integer_primary_key(self):
        sdl = 'type Counter @table(database: "ops") {\n  seq: Int! @primaryKey\n}'
        assert seed_record(parse_graphql_schema(sdl)[0]) == {"seq": 0}


# ============================================================================
# File Validation Tests
# ============================================================================

@pytest.mark.unit
class TestValidateSchemaFile:
    """Test schema file checks."""

    def test_valid_file(self, tmp_path):
        path = tmp_path / "schema.graphql"
        path.write_text(DOG_SDL)
        assert validate_schema_file(path) == (True, None)
        assert len(load_schema_file(path)) == 2

    def test_missing_file(self, tmp_path):
        valid, error = validate_schema_file(tmp_path / "missing.graphql")
        assert valid is False
        assert "not found" in error

    def test_wrong_extension(self, tmp_path):
        path = tmp_path / "schema.txt"
        path.write_text(DOG_SDL)
        valid, error = validate_schema_file(path)
        assert valid is False
        assert ".graphql or .gql" in error

    def test_empty_file(self, tmp_path):
        path = tmp_path / "schema.gql"
        path.write_text("")
        assert validate_schema_file(path)[1].startswith("Schema file is empty")

    def test_missing_table_directive(self, tmp_path):
        path = tmp_path / "schema.graphql"
        path.write_text("type Query {\n  dogs: [String]\n}")
        assert "@table" in validate_schema_file(path)[1]

    def test_load_invalid_raises(self, tmp_path):
        with pytest.raises(SchemaFileError):
            load_schema_file(tmp_path / "missing.graphql")


# ============================================================================
# apply_schema Tests
# ============================================================================

@pytest.mark.unit
class TestApplySchema:
    """Test creation of schemas, tables and indexes from SDL."""

    @pytest.mark.asyncio
    async def test_creates_missing_table(self, db, transport):
        """Test the full create path for a table that does not exist."""
        sdl = 'type Dog @table(database: "kennel") {\n  id: ID!\n  name: String @indexed\n}'

        def handler(body):
            op = body["operation"]
            if op == "list_schemas":
                return []
            if op == "describe_table" and not any(c["operation"] == "create_table" for c in transport.calls):
                return PermanentTransportError("not found", status=404, body={"error": "Table does not exist"})
            if op == "describe_table":
                return {"hash_attribute": "id", "attributes": [{"attribute": "id"}]}
            return {"message": "ok"}

        transport.handler = handler
        result = await db.apply_schema(sdl)

        outcome = result.data
        assert isinstance(outcome, SchemaApplyResult)
        assert outcome.schemas_created == ["kennel"]
        assert outcome.tables_created == ["kennel.Dog"]
        assert outcome.attributes_created == ["kennel.Dog.id", "kennel.Dog.name"]
        assert outcome.indexes_created == ["kennel.Dog.name"]
        assert outcome.errors == []

        create = next(c for c in transport.calls if c["operation"] == "create_table")
        assert create == {"operation": "create_table", "schema": "kennel", "table": "Dog", "hash_attribute": "id"}
        seed = next(c for c in transport.calls if c["operation"] == "insert")
        assert seed["records"] == [{"id": "__temp_schema_init__", "name": None}]
        assert "delete" in transport.operations
        # explicit schema everywhere; the client default is untouched
        assert db.schema == "dev"

    @pytest.mark.asyncio
    async def test_skip_existing(self, db, transport):
        """Test that existing tables are left alone with skip_existing."""
        transport.handler = lambda body: ["kennel"] if body["operation"] == "list_schemas" else {"hash_attribute": "id"}
        types = [SchemaType(name="Dog", schema="kennel", hash_attribute="id")]

        result = await db.apply_schema(types, skip_existing=True)

        assert result.data.schemas_created == []
        assert result.data.tables_created == []
        assert "create_table" not in transport.operations
        assert "create_schema" not in transport.operations

    @pytest.mark.asyncio
    async def test_force_recreates(self, db, transport):
        """Test that force drops and recreates an existing table."""
        transport.handler = lambda body: ["kennel"] if body["operation"] == "list_schemas" else {"hash_attribute": "id"}
        types = [SchemaType(name="Dog", schema="kennel", hash_attribute="id")]

        result = await db.apply_schema(types, force=True)

        ops = transport.operations
        assert ops.index("drop_table") < ops.index("create_table")
        assert result.data.tables_created == ["kennel.Dog"]

    @pytest.mark.asyncio
    async def test_table_error_recorded(self, db, transport):
        """Test that a failing type is recorded and does not raise."""
        def handler(body):
            if body["operation"] == "list_schemas":
                return ["kennel"]
            if body["operation"] == "describe_table":
                return PermanentTransportError("missing", status=404)
            if body["operation"] == "create_table":
                return PermanentTransportError("denied", status=403, body={"error": "not authorized"})
            return {}

        transport.handler = handler
        types = [SchemaType(name="Dog", schema="kennel", hash_attribute="id")]

        result = await db.apply_schema(types)

        assert result.data.tables_created == []
        assert result.data.errors == [{
            "type": "table",
            "name": "kennel.Dog",
            "error": "HarperDB query failed: not authorized",
        }]

    @pytest.mark.asyncio
    async def test_apply_schema_from_invalid_file(self, db, tmp_path):
        with pytest.raises(SchemaFileError):
            await db.apply_schema_from_file(tmp_path / "schema.txt")
