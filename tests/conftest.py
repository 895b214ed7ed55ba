import pytest

from agent_runtime.config import RuntimeConfig


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch):
    """Keep every test away from the real config, data dir and pm2 home."""
    monkeypatch.setenv("AGENTRT_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("AGENTRT_CONFIG", str(tmp_path / "config.toml"))
    monkeypatch.setenv("AGENTRT_PM2_HOME", str(tmp_path / "pm2"))
    monkeypatch.setattr("agent_runtime.config._config", RuntimeConfig())


@pytest.fixture
def agent_script(tmp_path):
    """A minimal agent project with an entrypoint script."""
    project = tmp_path / "my-agent"
    project.mkdir()
    script = project / "main.py"
    script.write_text("print('hello')\n")
    return script
