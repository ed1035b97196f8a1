"""Integration tests for the runbook pipelines.

These tests use MockTenantContext and MockSession to run the full
secret store -> token -> fetch -> reconcile flow without network access.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from api_mock import MockResponse, MockSession, MockTenantContext, make_machine, make_managed_device
from conftest import MACHINES_URL, MANAGED_DEVICES_URL, TEST_SECRETS, SleepRecorder

from tagger.config import Config, LogFormat, RunMode
from tagger.filters import InactivityCriteria
from tagger.main import (
    run_inactivity_tagging,
    run_stale_removal,
    run_subscription_tagging,
    setup_logging,
)
from tagger.removal import RemovalCriteria
from tagger.secret_store import EnvironmentSecretStore

TAG = "InactiveDevices"


@pytest.fixture
def session() -> MockSession:
    return MockSession()


class TestSubscriptionTagging:
    """Tests for run_subscription_tagging."""

    def test_tags_matching_machines(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
    ) -> None:
        session.add_collection(
            MACHINES_URL,
            [
                make_machine("m-1", subscription_id="sub-A"),
                make_machine("m-2", subscription_id="sub-C"),
                make_machine("m-3", subscription_id="sub-B", tags=["AVD"]),
            ],
        )

        with MockTenantContext() as tenant:
            report = run_subscription_tagging(
                config, ["sub-A", "sub-B"], "AVD", store=secret_store, session=session, sleep=sleep
            )

        assert report.exit_code == 0
        assert "1/1 tagged" in report.summary
        assert report.fatal is False
        assert session.posted_bodies == [{"Value": "AVD", "Action": "Add", "MachineIds": ["m-1"]}]
        assert session.headers["Authorization"] == "Bearer mock-bearer-token"
        assert tenant.token_requests[0]["scopes"] == (
            "https://api.securitycenter.microsoft.com/.default",
        )

    def test_what_if(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
    ) -> None:
        session.add_collection(MACHINES_URL, [make_machine("m-1", subscription_id="sub-A")])

        with MockTenantContext():
            report = run_subscription_tagging(
                config,
                ["sub-A"],
                "AVD",
                RunMode.WHAT_IF,
                store=secret_store,
                session=session,
                sleep=sleep,
            )

        assert report.exit_code == 0
        assert session.calls("POST") == []

    def test_closes_store_built_from_config(
        self, config: Config, session: MockSession, sleep: SleepRecorder
    ) -> None:
        store = MagicMock()
        store.get_secret.side_effect = TEST_SECRETS.get
        session.add_collection(MACHINES_URL, [])

        with patch("tagger.main.create_secret_store", return_value=store), MockTenantContext():
            report = run_subscription_tagging(
                config, ["sub-A"], "AVD", session=session, sleep=sleep
            )

        assert report.exit_code == 0
        store.close.assert_called_once_with()


class TestInactivityTagging:
    """Tests for run_inactivity_tagging."""

    def test_end_to_end(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
        now: datetime,
    ) -> None:
        """Test 1200 devices over three pages, 300 tagged, 400 matching."""
        seen = now - timedelta(days=45)
        records = (
            [make_machine(f"t-{i}", health_status="Inactive", last_seen=seen, tags=[TAG]) for i in range(300)]
            + [make_machine(f"i-{i}", health_status="Inactive", last_seen=seen) for i in range(400)]
            + [make_machine(f"a-{i}", last_seen=now) for i in range(500)]
        )
        session.add_collection(MACHINES_URL, records, page_size=500)

        with MockTenantContext():
            report = run_inactivity_tagging(
                config,
                InactivityCriteria(min_days=30, max_days=90),
                TAG,
                store=secret_store,
                session=session,
                sleep=sleep,
                now=now,
            )

        assert report.exit_code == 0
        assert "400/400 tagged" in report.summary
        assert len(session.calls("GET")) == 3
        assert [len(b["MachineIds"]) for b in session.posted_bodies] == [400]

    def test_missing_secret_makes_no_network_call(
        self, config: Config, session: MockSession, sleep: SleepRecorder
    ) -> None:
        secrets = dict(TEST_SECRETS)
        del secrets["DefenderAppSecret"]

        with MockTenantContext() as tenant:
            report = run_inactivity_tagging(
                config,
                InactivityCriteria(min_days=30),
                TAG,
                store=EnvironmentSecretStore(secrets),
                session=session,
                sleep=sleep,
            )

        assert report.exit_code == 1
        assert "DefenderAppSecret" in report.summary
        assert session.call_count == 0
        assert tenant.credential_count == 0

    def test_authentication_failure(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
    ) -> None:
        with MockTenantContext(fail_auth=True):
            report = run_inactivity_tagging(
                config,
                InactivityCriteria(min_days=30),
                TAG,
                store=secret_store,
                session=session,
                sleep=sleep,
            )

        assert report.exit_code == 1
        assert report.summary.startswith("Authentication failed")
        assert session.call_count == 0

    def test_malformed_tenant_id_is_fatal(
        self, config: Config, session: MockSession, sleep: SleepRecorder
    ) -> None:
        secrets = dict(TEST_SECRETS, DefenderTenantId="contoso tenant")

        with MockTenantContext() as tenant:
            report = run_inactivity_tagging(
                config,
                InactivityCriteria(min_days=30),
                TAG,
                store=EnvironmentSecretStore(secrets),
                session=session,
                sleep=sleep,
            )

        assert report.exit_code == 1
        assert report.summary.startswith("Configuration error")
        assert session.call_count == 0
        assert tenant.token_requests == []
        assert report.fatal

    def test_fetch_failure_tags_nothing(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
        now: datetime,
    ) -> None:
        records = [
            make_machine(f"i-{i}", health_status="Inactive", last_seen=now - timedelta(days=45))
            for i in range(600)
        ]
        urls = session.add_collection(MACHINES_URL, records, page_size=500)
        session.set_get_response(urls[1], MockResponse(500, {"error": {"code": "InternalError"}}))

        with MockTenantContext():
            report = run_inactivity_tagging(
                config,
                InactivityCriteria(min_days=30),
                TAG,
                store=secret_store,
                session=session,
                sleep=sleep,
                now=now,
            )

        assert report.exit_code == 1
        assert report.summary.startswith("Inventory fetch failed")
        assert session.calls("POST") == []


class TestStaleRemoval:
    """Tests for run_stale_removal."""

    def test_remove_with_confirmation(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
        now: datetime,
    ) -> None:
        session.add_collection(
            MANAGED_DEVICES_URL,
            [
                make_managed_device("d-1", last_sync=now - timedelta(days=200)),
                make_managed_device("d-2", last_sync=now - timedelta(days=1)),
            ],
        )

        with MockTenantContext() as tenant:
            report = run_stale_removal(
                config,
                RemovalCriteria(days_inactive=90),
                RunMode.APPLY,
                confirm=True,
                store=secret_store,
                session=session,
                sleep=sleep,
                now=now,
            )

        assert report.exit_code == 0
        assert "1/1 removed" in report.summary
        assert [c["url"] for c in session.calls("DELETE")] == [f"{MANAGED_DEVICES_URL}/d-1"]
        assert tenant.token_requests[0]["scopes"] == ("https://graph.microsoft.com/.default",)

    def test_remove_without_confirmation_is_fatal(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
    ) -> None:
        with MockTenantContext() as tenant:
            report = run_stale_removal(
                config,
                RemovalCriteria(days_inactive=90),
                RunMode.APPLY,
                store=secret_store,
                session=session,
                sleep=sleep,
            )

        assert report.exit_code == 1
        assert session.call_count == 0
        assert tenant.credential_count == 0


class TestSetupLogging:
    """Tests for logging configuration."""

    def test_json_output_redacts_secrets(
        self,
        config: Config,
        secret_store: EnvironmentSecretStore,
        session: MockSession,
        sleep: SleepRecorder,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        session.add_collection(MACHINES_URL, [])
        setup_logging(LogFormat.JSON)
        try:
            with MockTenantContext(token_value="eyJ.very.secret"):
                run_subscription_tagging(
                    config, ["sub-A"], "AVD", store=secret_store, session=session, sleep=sleep
                )
            logging.getLogger("tagger.test").info(
                "leak attempt", extra={"detail": f"Bearer eyJ.very.secret {TEST_SECRETS['DefenderAppSecret']}"}
            )
        finally:
            logging.getLogger().handlers = [
                h for h in logging.getLogger().handlers if h.get_name() != "tagger"
            ]

        output = capsys.readouterr().out
        lines = [json.loads(line) for line in output.splitlines() if line.startswith("{")]
        assert any(line["message"] == "Reconciliation complete" for line in lines)
        assert "eyJ.very.secret" not in output
        assert TEST_SECRETS["DefenderAppSecret"] not in output

    def test_setup_is_idempotent(self) -> None:
        setup_logging(LogFormat.TEXT)
        setup_logging(LogFormat.TEXT)
        try:
            handlers = [h for h in logging.getLogger().handlers if h.get_name() == "tagger"]
            assert len(handlers) == 1
        finally:
            logging.getLogger().handlers = [
                h for h in logging.getLogger().handlers if h.get_name() != "tagger"
            ]
