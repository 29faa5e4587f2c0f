import pytest
from pydantic import ValidationError

from costcontrol.config import Settings


def test_financial_defaults():
    settings = Settings(_env_file=None)

    assert settings.commitment_consistency_mode == "advisory"
    assert settings.contingency_warning_threshold == 80
    assert settings.recalculation_mode == "background"
    assert settings.recalculation_max_retries == 3


def test_modes_are_read_from_environment(monkeypatch):
    monkeypatch.setenv("COMMITMENT_CONSISTENCY_MODE", "serialized")
    monkeypatch.setenv("RECALCULATION_MODE", "inline")

    settings = Settings(_env_file=None)

    assert settings.commitment_consistency_mode == "serialized"
    assert settings.recalculation_mode == "inline"


def test_unknown_consistency_mode_is_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, commitment_consistency_mode="eventual")
