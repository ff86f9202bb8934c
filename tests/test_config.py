"""Tests for settings parsing."""

import pydantic
import pytest

from app.config import Settings


class TestCatalogSettings:
    """Tests for the configurable business catalogs."""

    def test_defaults(self):
        """Test catalog defaults are parsed into tuples."""
        settings = Settings()

        assert ("090805", "091002") in settings.paired_class_codes
        assert "MAXW001" in settings.bonus_product_codes
        assert "SUCCESS" in settings.activation_success_codes

    def test_csv_values(self):
        """Test comma separated overrides are split and trimmed."""
        settings = Settings(
            paired_class_codes=" 1:2 , 3:4",
            bonus_product_codes="A, B,,C",
        )

        assert settings.paired_class_codes == (("1", "2"), ("3", "4"))
        assert settings.bonus_product_codes == ("A", "B", "C")

    def test_invalid_pair(self):
        """Test a pair without a separator is rejected."""
        with pytest.raises(pydantic.ValidationError):
            Settings(paired_class_codes="090805")

    def test_frozen(self):
        """Test settings cannot be changed after load."""
        settings = Settings()

        with pytest.raises(pydantic.ValidationError):
            settings.log_level = "DEBUG"
