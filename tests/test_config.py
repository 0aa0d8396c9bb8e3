from pathlib import Path

import pytest

from config import AppConfig


def test_config_resolves_paths(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("paths:\n  logs: \"logs\"\n", encoding="utf-8")

    config = AppConfig.load(config_path)
    logs_path = config.resolve_path("paths", "logs")

    assert logs_path == config_path.parent / "logs"
    assert config.get("missing", default=123) == 123
    assert config.db_paths()["state"] == config_path.parent / "data" / "state.sqlite"


def test_config_parses_boundaries(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "\n".join(
            [
                "boundaries:",
                "  - id: \"1001\"",
                "    root: \"projects/a\"",
                "    bytes_limit: 4096",
                "  - id: \"1002\"",
                f"    root: \"{(tmp_path / 'b').as_posix()}\"",
                "    inherit: false",
            ]
        ),
        encoding="utf-8",
    )

    boundaries = AppConfig.load(config_path).boundaries()

    assert [boundary.boundary_id for boundary in boundaries] == ["1001", "1002"]
    assert boundaries[0].root == tmp_path / "projects" / "a"
    assert boundaries[0].bytes_limit == 4096
    assert boundaries[0].inodes_limit is None
    assert boundaries[0].inherit is True
    assert boundaries[1].inherit is False


def test_config_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text("validation:\n  capacity_margin: 1.25\n", encoding="utf-8")
    monkeypatch.setenv("QUOTA_MOVER_CONFIG", str(config_path))

    config = AppConfig.load()

    assert config.get("validation", "capacity_margin") == 1.25


def test_config_rejects_invalid_boundary(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("boundaries:\n  - id: \"x\"\n", encoding="utf-8")

    with pytest.raises(ValueError):
        AppConfig.load(config_path).boundaries()
