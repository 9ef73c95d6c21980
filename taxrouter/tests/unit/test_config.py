from __future__ import annotations

import pytest

from taxrouter.core.config import Settings, control_plane_url, load_file_config, parse_file_config
from taxrouter.core.errors import ConfigError


SAMPLE = """
server:
  port: 9090
database:
  host: cp.internal
  port: 6543
  user: router
  password: "p@ss/word"
  dbname: welltaxpro
  sslmode: require
  initDbName: template1
cors:
  allowedOrigins: ["https://app.example.com"]
firebase:
  projectId: welltax-prod
portal:
  jwtSecret: portal-secret
  baseURL: https://portal.example.com
"""


def test_parse_file_config_reads_aliases() -> None:
    config = parse_file_config(SAMPLE)

    assert config.server.port == 9090
    assert config.database.host == "cp.internal"
    assert config.database.init_db_name == "template1"
    assert config.cors.allowed_origins == ["https://app.example.com"]
    assert config.cors.allowed_methods == ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    assert config.firebase.project_id == "welltax-prod"
    assert config.portal.jwt_secret == "portal-secret"
    assert config.portal.base_url == "https://portal.example.com"


def test_empty_document_yields_defaults() -> None:
    config = parse_file_config("")
    assert config.server.port == 8080
    assert config.database.dbname == "welltaxpro"
    assert config.portal.jwt_secret is None


@pytest.mark.parametrize("raw", ["server: [unclosed", "- just\n- a list\n", "server:\n  port: not-a-port\n"])
def test_malformed_documents_raise_config_error(raw: str) -> None:
    with pytest.raises(ConfigError):
        parse_file_config(raw)


def test_load_file_config_missing_file_means_defaults(tmp_path) -> None:
    assert load_file_config(tmp_path / "absent.yaml").server.port == 8080

    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE, encoding="utf-8")
    assert load_file_config(path).database.port == 6543


def test_control_plane_url_prefers_explicit_setting() -> None:
    file_config = parse_file_config(SAMPLE)

    explicit = control_plane_url(Settings(database_url="postgresql+asyncpg://u@h/db"), file_config)
    assert explicit == "postgresql+asyncpg://u@h/db"

    built = control_plane_url(Settings(database_url=None), file_config)
    assert built.host == "cp.internal"
    assert built.port == 6543
    assert built.password == "p@ss/word"
    assert built.database == "welltaxpro"
