import pytest
from pydantic import ValidationError

from ipcbus.config import Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("IPCBUS_CONFIG", "IPCBUS_MAX_WORKERS", "IPCBUS_LISTEN_PATH", "IPCBUS_SOCKET_MODE"):
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(key.lower(), raising=False)


class TestSettings:
    def test_defaults(self):
        cfg = Settings()
        assert cfg.max_workers == 30
        assert cfg.socket_mode == 0o666
        assert cfg.read_timeout is None

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("IPCBUS_MAX_WORKERS", "5")
        monkeypatch.setenv("IPCBUS_LISTEN_PATH", "/tmp/x.sock")
        cfg = Settings()
        assert cfg.max_workers == 5
        assert cfg.listen_path == "/tmp/x.sock"

    @pytest.mark.parametrize("raw", ["660", "0o660"])
    def test_socket_mode_is_octal(self, monkeypatch, raw):
        monkeypatch.setenv("IPCBUS_SOCKET_MODE", raw)
        assert Settings().socket_mode == 0o660

    def test_socket_mode_int_is_kept(self):
        assert Settings(socket_mode=0o660).socket_mode == 0o660

    @pytest.mark.parametrize("mode", [-1, 0o1777, 666])
    def test_socket_mode_out_of_range(self, mode):
        with pytest.raises(ValidationError, match="socket_mode"):
            Settings(socket_mode=mode)

    @pytest.mark.parametrize("raw", ["1666", "9", "rw"])
    def test_socket_mode_bad_env(self, monkeypatch, raw):
        monkeypatch.setenv("IPCBUS_SOCKET_MODE", raw)
        with pytest.raises(ValidationError):
            Settings()


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_settings(str(tmp_path / "nope.yml"))
        assert cfg == Settings()

    def test_yaml_values(self, tmp_path):
        p = tmp_path / "ipcbus.yml"
        p.write_text(
            "listen_path: /run/a.sock\n"
            "peer_path: /run/b.sock\n"
            "max_workers: 8\n"
            "socket_mode: '600'\n"
            "unknown_key: ignored\n"
        )
        cfg = load_settings(str(p))
        assert cfg.listen_path == "/run/a.sock"
        assert cfg.peer_path == "/run/b.sock"
        assert cfg.max_workers == 8
        assert cfg.socket_mode == 0o600

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        p = tmp_path / "ipcbus.yml"
        p.write_text("max_workers: 8\n")
        monkeypatch.setenv("IPCBUS_MAX_WORKERS", "3")
        assert load_settings(str(p)).max_workers == 3

    def test_lowercase_env_beats_yaml(self, tmp_path, monkeypatch):
        p = tmp_path / "ipcbus.yml"
        p.write_text("max_workers: 8\n")
        monkeypatch.setenv("ipcbus_max_workers", "3")
        assert load_settings(str(p)).max_workers == 3

    @pytest.mark.parametrize("raw", ["666", "0666", "0o666", "'666'"])
    def test_yaml_socket_mode_is_octal(self, tmp_path, raw):
        p = tmp_path / "ipcbus.yml"
        p.write_text(f"socket_mode: {raw}\n")
        assert load_settings(str(p)).socket_mode == 0o666

    def test_yaml_socket_mode_out_of_range(self, tmp_path):
        p = tmp_path / "ipcbus.yml"
        p.write_text("socket_mode: 1777\n")
        with pytest.raises(ValidationError, match="socket_mode"):
            load_settings(str(p))

    def test_path_from_env(self, tmp_path, monkeypatch):
        p = tmp_path / "other.yml"
        p.write_text("max_workers: 12\n")
        monkeypatch.setenv("IPCBUS_CONFIG", str(p))
        assert load_settings().max_workers == 12

    def test_empty_yaml(self, tmp_path):
        p = tmp_path / "empty.yml"
        p.write_text("")
        assert load_settings(str(p)) == Settings()
