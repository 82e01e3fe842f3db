"""Tests for SyncEngine.test_credentials and the status it records."""

from __future__ import annotations

import pytest

from src.integration_sync.core.context import OperatorContext
from src.integration_sync.errors import FatalProviderError, IntegrationNotConfiguredError
from src.integration_sync.integrations.schemas import IntegrationProvider
from src.integration_sync.runs.schemas import IntegrationStatus
from tests.doubles import outage

CTX = OperatorContext(organization_id="org-1", user_id="ops-1")


@pytest.mark.asyncio
async def test_valid_credentials_reactivate_failed_config(engine, configs, adapter):
    configs.add(
        id="cfg-1",
        credentials={"access_key": "k", "access_key_secret": "s"},
        status=IntegrationStatus.FAILED,
        last_error="GONG API returned 401",
    )

    check = await engine.test_credentials(CTX, "GONG")

    assert check.valid
    assert check.message == "Credentials validated successfully"
    assert adapter.validated == [{"access_key": "k", "access_key_secret": "s"}]
    updated = configs.configs["cfg-1"]
    assert updated.status is IntegrationStatus.ACTIVE
    assert updated.last_error is None

    planned = await engine.plan_manual_sync(CTX, IntegrationProvider.GONG, "after-fix")
    assert planned.config.id == "cfg-1"


@pytest.mark.asyncio
async def test_rejected_credentials_mark_config_failed(engine, configs, adapter):
    configs.add(id="cfg-1")
    adapter.credentials_valid = False

    check = await engine.test_credentials(CTX, IntegrationProvider.GONG)

    assert not check.valid
    updated = configs.configs["cfg-1"]
    assert updated.status is IntegrationStatus.FAILED
    assert updated.last_error == "Credential validation failed"


@pytest.mark.asyncio
async def test_provider_error_is_reported_not_raised(engine, configs, adapter):
    configs.add(id="cfg-1")
    adapter.credentials_valid = FatalProviderError("Invalid GONG credentials: access_key missing")

    check = await engine.test_credentials(CTX, IntegrationProvider.GONG)

    assert check.valid is False
    assert check.message == "Invalid GONG credentials: access_key missing"
    assert configs.configs["cfg-1"].last_error == check.message

    adapter.credentials_valid = outage()
    check = await engine.test_credentials(CTX, IntegrationProvider.GONG)
    assert configs.configs["cfg-1"].status is IntegrationStatus.FAILED
    assert check.message == "GONG API returned 503"


@pytest.mark.asyncio
async def test_webhook_provider_is_activated_without_a_check(engine, configs, adapter):
    configs.add(id="cfg-1", provider=IntegrationProvider.MERGE_DEV, status=IntegrationStatus.FAILED)

    check = await engine.test_credentials(CTX, IntegrationProvider.MERGE_DEV)

    assert check.valid
    assert adapter.validated == []
    assert configs.configs["cfg-1"].status is IntegrationStatus.ACTIVE


@pytest.mark.asyncio
async def test_disabled_config_stays_disabled(engine, configs):
    configs.add(id="cfg-1", status=IntegrationStatus.DISABLED)

    check = await engine.test_credentials(CTX, IntegrationProvider.GONG)

    assert check.valid
    assert configs.configs["cfg-1"].status is IntegrationStatus.DISABLED


@pytest.mark.asyncio
async def test_missing_config_is_rejected(engine, configs):
    configs.add(id="cfg-1", organization_id="org-2")

    with pytest.raises(IntegrationNotConfiguredError):
        await engine.test_credentials(CTX, IntegrationProvider.GONG)
