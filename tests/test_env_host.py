import pytest
import irrigator


class DummyApp:
    def __init__(self, captured):
        self.captured = captured

    def run(self, host=None, port=None):
        self.captured['host'] = host
        self.captured['port'] = port


def _patch_web(monkeypatch, tmp_path, captured):
    monkeypatch.setattr(irrigator, "CONFIG_PATH", str(tmp_path / 'config.json'))

    def fake_build_app(cfg, engine, scheduler, notifications):
        captured['cfg'] = cfg
        captured['engine'] = engine
        return DummyApp(captured)

    monkeypatch.setattr(irrigator, "build_app", fake_build_app)
    # prevent scheduler from starting threads
    monkeypatch.setattr(irrigator.IrrigationScheduler, "start", lambda self: None)


def test_env_host_overrides_default(monkeypatch, tmp_path):
    monkeypatch.setenv("IRRIGATOR_HOST", "farm.local")
    captured = {}
    _patch_web(monkeypatch, tmp_path, captured)

    irrigator.main(["web"])

    assert captured['host'] == "farm.local"
    assert captured['port'] == 8000


def test_cli_host_flag_wins(monkeypatch, tmp_path):
    monkeypatch.setenv("IRRIGATOR_HOST", "farm.local")
    captured = {}
    _patch_web(monkeypatch, tmp_path, captured)

    irrigator.main(["web", "--host", "127.0.0.1", "--port", "9001"])

    assert captured['host'] == "127.0.0.1"
    assert captured['port'] == 9001


@pytest.mark.parametrize("url", ["http://backend:8000", "https://farm.example/"])
def test_backend_url_from_env_selects_rest_stores(monkeypatch, tmp_path, url):
    monkeypatch.setenv("IRRIGATOR_BACKEND_URL", url)
    monkeypatch.delenv("IRRIGATOR_HOST", raising=False)
    captured = {}
    _patch_web(monkeypatch, tmp_path, captured)

    irrigator.main(["web"])

    assert captured['cfg']["backend"]["url"] == url
    assert isinstance(captured['engine'].store, irrigator.RestFieldStore)
