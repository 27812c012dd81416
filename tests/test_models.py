"""
Tests for option parsing and environment fallbacks.
"""

from scriptlab.models import RunOptions, Step


class TestRunOptionsFromDict:
    def test_request_body(self, monkeypatch):
        monkeypatch.delenv("BLOCKED_HOSTS", raising=False)
        options = RunOptions.from_dict(
            {
                "url": "https://example.test/",
                "script_url": "https://cdn.example.test/dark.user.js",
                "steps": [{"action": "click", "target": "#toggle"}, "not-a-step"],
                "blocked_hosts": [" tracker.test ", ""],
                "visual_diff_threshold": 8,
            }
        )
        assert options.target_url == "https://example.test/"
        assert options.script.kinds() == ["url"]
        assert options.steps == (Step(action="click", target="#toggle"),)
        assert options.blocked_hosts == ("tracker.test",)
        assert options.visual_diff_threshold == 8.0
        assert options.engine == "Tampermonkey (init-script)"
        assert options.install_browsers is True

    def test_environment_fallbacks(self, monkeypatch):
        monkeypatch.setenv("USERSCRIPT_ENGINE_EXT_DIR", "/opt/tampermonkey")
        monkeypatch.setenv("BASELINE_DIR", "/srv/baselines")
        monkeypatch.setenv("BLOCKED_HOSTS", "ads.test, tracker.test")
        options = RunOptions.from_dict({"target_url": "https://example.test/", "script_path": "a.js"})
        assert options.extension_dir == "/opt/tampermonkey"
        assert options.baseline_dir == "/srv/baselines"
        assert options.blocked_hosts == ("ads.test", "tracker.test")

    def test_explicit_values_win_over_environment(self, monkeypatch):
        monkeypatch.setenv("BLOCKED_HOSTS", "ads.test")
        monkeypatch.setenv("BASELINE_DIR", "/srv/baselines")
        options = RunOptions.from_dict(
            {"target_url": "https://example.test/", "script_path": "a.js", "blocked_hosts": [], "baseline_dir": "b"}
        )
        assert options.blocked_hosts == ()
        assert options.baseline_dir == "b"
