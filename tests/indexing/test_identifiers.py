import pytest

from src.indexing.errors import ConfigurationError
from src.indexing.identifiers import (
    quote_identifier,
    quote_table_name,
    validate_identifier,
    validate_table_name,
)


class TestValidateTableName:
    @pytest.mark.parametrize("name", ["bids", "_bids", "Bids2025", "analytics.bids", "a" * 63])
    def test_accepts_valid_names(self, name):
        assert validate_table_name(name) == name

    @pytest.mark.parametrize(
        "name",
        [
            "2bids",
            "bids; DROP TABLE users",
            'bids"',
            "bid-prices",
            "a" * 64,
            "one.two.three",
            ".bids",
            "bids.",
            "bids\n",
            "analytics\n.bids",
        ],
    )
    def test_rejects_invalid_names(self, name):
        with pytest.raises(ConfigurationError, match="Invalid table name"):
            validate_table_name(name)

    @pytest.mark.parametrize("name", [None, "", 42])
    def test_missing_table_name(self, name):
        with pytest.raises(ConfigurationError, match="missing tableName"):
            validate_table_name(name)


class TestQuoting:
    def test_quote_table_name(self):
        assert quote_table_name("bids") == '"bids"'
        assert quote_table_name("analytics.Bids") == '"analytics"."Bids"'

    def test_quote_identifier_validates(self):
        assert quote_identifier("price") == '"price"'
        with pytest.raises(ConfigurationError):
            quote_identifier('price" = 0; --')

    def test_validate_identifier_rejects_dots(self):
        with pytest.raises(ConfigurationError):
            validate_identifier("schema.table")

    def test_trailing_newline_is_rejected(self):
        with pytest.raises(ConfigurationError):
            quote_identifier("price\n")
        with pytest.raises(ConfigurationError):
            quote_table_name("bids\n")
