"""Smoke tests for package imports.

This module verifies that all key packages can be imported successfully.
"""

import pytest


@pytest.mark.unit
class TestSmokeImports:
    """Smoke tests to verify all key packages are importable."""

    def test_import_package(self) -> None:
        import calendar_sources
        assert calendar_sources.__version__

    def test_import_core(self) -> None:
        from calendar_sources import core
        assert core.CalendarSourceError is not None

    def test_import_registry(self) -> None:
        from calendar_sources.core import registry
        assert registry.ExternalCalendarRegistry is not None

    def test_import_protocol_handlers(self) -> None:
        """Importing the protocol package registers the built-in handlers."""
        from calendar_sources.libs.protocol import ProtocolHandlerFactory

        for protocol in ("github", "https", "local", "module"):
            assert protocol in ProtocolHandlerFactory.list_providers()

    def test_import_observability(self) -> None:
        from calendar_sources import observability
        assert observability.get_logger is not None

    def test_import_bootstrap(self) -> None:
        from calendar_sources import bootstrap
        assert bootstrap.build_registry is not None
