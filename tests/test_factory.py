"""Tests for printer_mcp.factory.PrinterFactory."""

from __future__ import annotations

import asyncio
from unittest import mock

import pytest

from printer_mcp.factory import PrinterFactory
from printer_mcp.printers import (
    BambuImplementation,
    CrealityImplementation,
    KlipperImplementation,
    OctoPrintImplementation,
    UnsupportedTypeError,
)


@pytest.fixture
def factory() -> PrinterFactory:
    return PrinterFactory(session=mock.MagicMock())


class TestLookup:
    def test_supported_types(self, factory: PrinterFactory) -> None:
        assert set(factory.supported_types) == {
            "octoprint", "klipper", "duet", "repetier", "bambu", "prusa", "creality",
        }

    def test_case_insensitive_same_instance(self, factory: PrinterFactory) -> None:
        assert factory.get_implementation("Bambu") is factory.get_implementation("bambu")
        assert factory.get_implementation("  OCTOPRINT ") is factory.get_implementation("octoprint")

    def test_types(self, factory: PrinterFactory) -> None:
        assert isinstance(factory.get_implementation("bambu"), BambuImplementation)
        assert isinstance(factory.get_implementation("octoprint"), OctoPrintImplementation)
        assert isinstance(factory.get_implementation("klipper"), KlipperImplementation)
        assert isinstance(factory.get_implementation("creality"), CrealityImplementation)

    @pytest.mark.parametrize("name", ["makerbot9000", "", "   "])
    def test_unknown_type(self, factory: PrinterFactory, name: str) -> None:
        with pytest.raises(UnsupportedTypeError) as excinfo:
            factory.get_implementation(name)
        assert excinfo.value.code == "UNSUPPORTED_TYPE"


class TestDisconnectAll:
    def test_one_failure_does_not_stop_others(self, factory: PrinterFactory) -> None:
        bambu = factory.get_implementation("bambu")
        octoprint = factory.get_implementation("octoprint")
        with mock.patch.object(bambu, "shutdown", side_effect=RuntimeError("boom")), \
                mock.patch.object(octoprint, "shutdown", wraps=octoprint.shutdown) as octo_shutdown:
            asyncio.run(factory.disconnect_all())
        octo_shutdown.assert_called_once()
        factory._session.close.assert_called_once()

    def test_empty_pools(self, factory: PrinterFactory) -> None:
        asyncio.run(factory.disconnect_all())
        bambu = factory.get_implementation("bambu")
        assert len(bambu.mqtt_pool) == 0
        assert len(bambu.ftp_pool) == 0
