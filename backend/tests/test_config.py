import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_defaults(monkeypatch):
    for key in ("COST_BASIS_BATCH_SIZE", "COST_BASIS_BATCH_DELAY_SECONDS", "FLOOR_PRICE_USD"):
        monkeypatch.delenv(key, raising=False)

    settings = config.Settings(_env_file=None)

    assert settings.COST_BASIS_BATCH_SIZE == 10
    assert settings.COST_BASIS_BATCH_DELAY_SECONDS == pytest.approx(0.1)
    assert settings.COST_BASIS_CACHE_TTL_SECONDS == 3600
    assert settings.PRICE_FALLBACK_WINDOW_SECONDS == 86400
    assert settings.FLOOR_PRICE_USD == pytest.approx(1e-9)


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("COST_BASIS_BATCH_SIZE", "25")
    monkeypatch.setenv("COST_BASIS_BATCH_DELAY_SECONDS", "0")

    settings = config.Settings(_env_file=None)

    assert settings.COST_BASIS_BATCH_SIZE == 25
    assert settings.COST_BASIS_BATCH_DELAY_SECONDS == 0


@pytest.mark.parametrize(
    "field,value",
    [
        ("COST_BASIS_BATCH_SIZE", 0),
        ("COST_BASIS_BATCH_DELAY_SECONDS", -0.5),
        ("COST_BASIS_WORKER_POLL_SECONDS", -1),
        ("FLOOR_PRICE_USD", 0),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        config.Settings(_env_file=None, **{field: value})


def test_relative_sqlite_path_resolves_under_project_root(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_PROJECT_ROOT", tmp_path.resolve())

    normalized = config.normalize_database_url("sqlite+aiosqlite:///./data/ledger.db")

    assert normalized == f"sqlite+aiosqlite:///{(tmp_path / 'data' / 'ledger.db').resolve()}"


def test_memory_database_url_is_kept():
    assert (
        config.normalize_database_url("sqlite+aiosqlite:///:memory:")
        == "sqlite+aiosqlite:///:memory:"
    )


def test_non_sqlite_url_untouched():
    url = "postgresql+asyncpg://user:pw@localhost/ledger"
    assert config.normalize_database_url(f"  '{url}' ") == url
