from kanthink.config_loader import _deep_merge, load_config


def test_defaults_load_from_packaged_yaml(monkeypatch):
    monkeypatch.delenv("KANTHINK_WEB_SEARCH_MODEL", raising=False)
    config = load_config()
    assert config.retry.attempts == 2
    assert config.limits.excerpt_chars == 150
    assert config.quota.cookie_name == "kanthink_anon_id"


def test_workspace_overrides_merge_deeply(tmp_path, monkeypatch):
    monkeypatch.delenv("KANTHINK_WEB_SEARCH_MODEL", raising=False)
    (tmp_path / ".kanthink").mkdir()
    (tmp_path / ".kanthink" / "config.yaml").write_text("safeguards:\n  daily_cap: 7\n")

    config = load_config(tmp_path)

    assert config.safeguards.daily_cap == 7
    assert config.safeguards.cooldown_minutes == 5


def test_empty_web_search_env_disables_search(monkeypatch):
    monkeypatch.setenv("KANTHINK_WEB_SEARCH_MODEL", "")
    assert load_config().routing.web_search is None


def test_deep_merge_keeps_untouched_keys():
    merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}
