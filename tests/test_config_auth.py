import importlib
import json
from unittest import mock

import auth
import config
from cpbq_import.commit import DEFAULT_COMMIT_BATCH_SIZE
from cpbq_import.duplicates import DEFAULT_LOOKUP_BATCH_SIZE
from cpbq_import.sheets import HEADER_SCAN_ROWS


# ─── config ───────────────────────────────────────────────────────────────────

def test_env_override(monkeypatch):
    monkeypatch.setenv("CPBQ_COMMIT_BATCH_SIZE", " 500 ")
    assert config._env("COMMIT_BATCH_SIZE", 1000, int) == 500


def test_env_blank_uses_default(monkeypatch):
    monkeypatch.setenv("CPBQ_DATASET_ID", "  ")
    assert config._env("DATASET_ID", "cpbq_data") == "cpbq_data"
    monkeypatch.delenv("CPBQ_DATASET_ID")
    assert config._env("DATASET_ID", "cpbq_data") == "cpbq_data"


def test_full_table_id_composed():
    assert config.FULL_TABLE_ID == f"{config.PROJECT_ID}.{config.DATASET_ID}.{config.TABLE_ID}"


def test_pipeline_defaults_come_from_package(monkeypatch):
    for name in ("LOOKUP_BATCH_SIZE", "COMMIT_BATCH_SIZE", "HEADER_SCAN_ROWS"):
        monkeypatch.delenv(f"CPBQ_{name}", raising=False)
    reloaded = importlib.reload(config)

    assert reloaded.LOOKUP_BATCH_SIZE == DEFAULT_LOOKUP_BATCH_SIZE
    assert reloaded.COMMIT_BATCH_SIZE == DEFAULT_COMMIT_BATCH_SIZE
    assert reloaded.HEADER_SCAN_ROWS == HEADER_SCAN_ROWS


# ─── auth ─────────────────────────────────────────────────────────────────────

def _clear_env(monkeypatch):
    for name in ("BQ_CREDENTIALS_JSON", "BQ_CLIENT_EMAIL", "BQ_PRIVATE_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_no_env_credentials(monkeypatch):
    _clear_env(monkeypatch)
    assert auth.credentials_from_env() is None


def test_service_account_from_split_env(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("BQ_CLIENT_EMAIL", "import@cpbq.iam.gserviceaccount.com")
    monkeypatch.setenv("BQ_PRIVATE_KEY", "-----BEGIN-----\\nabc\\n-----END-----")
    sentinel = object()
    with mock.patch.object(auth.service_account.Credentials, "from_service_account_info",
                           return_value=sentinel) as factory:
        assert auth.credentials_from_env() is sentinel

    info = factory.call_args.args[0]
    assert info["private_key"] == "-----BEGIN-----\nabc\n-----END-----"
    assert info["client_email"] == "import@cpbq.iam.gserviceaccount.com"
    assert factory.call_args.kwargs["scopes"] == auth.SCOPES


def test_credentials_json_authorized_user(monkeypatch):
    _clear_env(monkeypatch)
    payload = {"type": "authorized_user", "refresh_token": "r", "client_id": "c", "client_secret": "s"}
    monkeypatch.setenv("BQ_CREDENTIALS_JSON", json.dumps(payload))
    sentinel = object()
    with mock.patch.object(auth.Credentials, "from_authorized_user_info",
                           return_value=sentinel) as factory:
        assert auth.credentials_from_env() is sentinel
    assert factory.call_args.args == (payload, auth.SCOPES)


def test_get_credentials_falls_back_to_adc(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setattr(auth, "TOKEN_PATH", str(tmp_path / "token.json"))
    monkeypatch.setattr(auth, "CLIENT_SECRET_PATH", str(tmp_path / "client_secret.json"))
    assert auth.get_credentials() is None
