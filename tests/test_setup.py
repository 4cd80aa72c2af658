"""Test that the project setup is working correctly."""

import omnipair_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert omnipair_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from omnipair_indexer import control
    from omnipair_indexer import decoder
    from omnipair_indexer import indexer
    from omnipair_indexer import ingestor
    from omnipair_indexer import ledger
    from omnipair_indexer import storage

    # Just verify imports work
    assert control is not None
    assert decoder is not None
    assert indexer is not None
    assert ingestor is not None
    assert ledger is not None
    assert storage is not None
