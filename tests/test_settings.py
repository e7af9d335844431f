"""TOML config loading, profile overlay and typed accessors."""

from pathlib import Path

from predindex.config import get_settings, load_config
from predindex.resolver import ResolverConfig

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def test_default_config_loads():
    settings = get_settings(config_dir=REPO_CONFIG)
    assert settings.event_batch_size == 500
    assert settings.conditional_tokens == ["0x4d97dcd97ec945f40cf65f87097ace5ea0476045"]
    assert settings.collateral_by_oracle == {
        "0xd91e80cf2e7be2e162c6513ced06f1dd0da35296": "0x3a3bd7bb9528e159577f7c2e685cc81a765002e2"
    }
    assert settings.outcome_labeler == "negrisk"
    assert settings.pending_timeout_blocks == 43200


def test_profile_overlay(tmp_path):
    (tmp_path / "default.toml").write_text(
        '[storage]\ndb_path = "a.duckdb"\n[ingestion]\nevent_batch_size = 10\nresolve_workers = 2\n'
        '[contracts]\nnegrisk_adapters = ["0xD91E80CF2E7BE2E162C6513CED06F1DD0DA35296"]\n',
        encoding="utf-8",
    )
    (tmp_path / "dev.toml").write_text('[ingestion]\nevent_batch_size = 3\n[logging]\nlevel = "debug"\n', encoding="utf-8")
    settings = get_settings("dev", tmp_path)
    assert settings.db_path == "a.duckdb"
    assert settings.event_batch_size == 3
    assert settings.resolve_workers == 2
    assert settings.logging_level == "DEBUG"
    assert settings.negrisk_adapters == ["0xd91e80cf2e7be2e162c6513ced06f1dd0da35296"]
    # Missing profile file falls back to defaults
    assert get_settings("prod", tmp_path).event_batch_size == 10


def test_missing_config_dir_gives_defaults(tmp_path):
    assert load_config(config_dir=tmp_path) == {}
    settings = get_settings(config_dir=tmp_path)
    assert settings.resolve_workers == 1
    assert settings.outcome_labeler == "none"
    assert settings.pending_timeout_blocks == 0
    config = ResolverConfig.from_settings(settings)
    assert config.negrisk_adapters == frozenset()
