from unittest.mock import patch

import pytest

from airflow_gateway.app import build_app_context, get_app_context
from airflow_gateway.config import Settings


@pytest.fixture
def clean_context():
    get_app_context.cache_clear()
    yield
    get_app_context.cache_clear()


def _settings(tmp_path) -> Settings:
    return Settings(
        storage={"sqlite_path": str(tmp_path / "ctx.sqlite")},
        upstream={"base_url": "http://airflow.test", "username": "airflow", "password": "pw"},
        idp={
            "base_url": "http://idp.test",
            "realm": "airflow",
            "client_id": "airflow-gateway",
            "sync": {"interval_ms": 120_000, "initial_delay_ms": 5_000},
        },
    )


@pytest.mark.asyncio
async def test_build_app_context_wires_components(tmp_path):
    context = build_app_context(_settings(tmp_path))
    try:
        assert context.upstream.api_root == "http://airflow.test/api/v1"
        assert context.token_validator.issuer == "http://idp.test/realms/airflow"
        assert context.user_sync.users_endpoint == "http://idp.test/admin/realms/airflow/users"
        assert context.sync_worker.interval_seconds == 120
        assert context.sync_worker.initial_delay_seconds == 5
        assert context.dags.audit is context.audit
        assert context.dag_runs.client is context.upstream
        assert context.audit.store is context.store
        assert context.token_client._client is context.idp_http
        assert context.token_validator._client is context.idp_http
        assert context.user_sync._client is context.idp_http
        assert context.idp_http.timeout.read == 15.0
    finally:
        await context.aclose()

    assert (tmp_path / "ctx.sqlite").exists()


@patch("airflow_gateway.app.load_settings")
def test_get_app_context_is_cached(mock_load_settings, tmp_path, clean_context):
    mock_load_settings.return_value = _settings(tmp_path)

    first = get_app_context()
    second = get_app_context()

    assert first is second
    mock_load_settings.assert_called_once()
    first.store.close()
