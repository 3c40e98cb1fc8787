"""Test that the project setup is working correctly."""

import presale_monitor


def test_version() -> None:
    """Test that version is defined."""
    assert presale_monitor.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from presale_monitor import api, chain, monitor, pricing

    assert api is not None
    assert chain is not None
    assert monitor is not None
    assert pricing is not None
