#!/usr/bin/env python3
"""
Unit tests for reconciliation of the local measurement with the remote profile.
"""

import asyncio
from unittest.mock import Mock

import pytest

from session_shared.exceptions import CredentialInvalidError, ErrorCode, GatewayError, ReconciliationError
from session_shared.models import (
    AccessToken, LocalMeasurement, Measurement, ProfileSnapshot, ReconciliationAction,
    ReconciliationChoice
)
from session_client.auth.credential_store import CredentialStore
from session_client.reconciliation import ReconciliationEngine, decide


def local(height, weight, gender=None, tag=None):
    return LocalMeasurement(Measurement(height=height, weight=weight, gender=gender), gender=tag)


async def wait_for_prompt(engine):
    for _ in range(100):
        if engine.pending_prompt is not None:
            return engine.pending_prompt
        await asyncio.sleep(0)
    raise AssertionError("reconciliation prompt never opened")


class TestDecide:
    """Test the reconciliation decision table."""

    @pytest.fixture
    def snapshot(self):
        """Create a profile with a female default slot."""
        return ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

    def test_nothing_anywhere(self):
        """Test no local and no remote is a no-op."""
        assert decide(None, ProfileSnapshot()).action == ReconciliationAction.NO_OP

    def test_remote_only_downloads(self, snapshot):
        """Test a remote slot with no local measurement is downloaded."""
        decision = decide(None, snapshot)

        assert decision.action == ReconciliationAction.DOWNLOAD
        assert decision.slot_key == 'bodyF'

    def test_local_only_uploads(self):
        """Test a local measurement with no matching remote slot is uploaded."""
        decision = decide(local(170, 65, tag='M'), ProfileSnapshot())

        assert decision.action == ReconciliationAction.UPLOAD
        assert decision.slot_key == 'bodyM'

    def test_equal_values_discard_local(self, snapshot):
        """Test equal values make the local copy redundant."""
        decision = decide(local('165', '55.0', tag='F'), snapshot)
        assert decision.action == ReconciliationAction.DISCARD_LOCAL

    def test_different_values_ask_user(self, snapshot):
        """Test conflicting values require a user decision."""
        assert decide(local(170, 60, tag='F'), snapshot).action == ReconciliationAction.ASK_USER

    def test_local_gender_falls_back_to_default_slot(self, snapshot):
        """Test an untagged measurement is compared against the default slot."""
        decision = decide(local(170, 60), snapshot)

        assert decision.slot_key == 'bodyF'
        assert decision.action == ReconciliationAction.ASK_USER

    def test_untagged_without_default_is_noop(self):
        """Test there is nothing to compare against without any gender."""
        decision = decide(local(170, 60), ProfileSnapshot(slots={'bodyF': {'HV': 1}}))

        assert decision.action == ReconciliationAction.NO_OP
        assert decision.slot_key is None

    def test_stored_gender_tag_selects_slot(self, snapshot):
        """Test the stored gender tag picks the slot to download."""
        snapshot = snapshot.with_slot('bodyM', {'HV': 180, 'WV': 80})
        decision = decide(None, snapshot, local_gender='M')

        assert decision.action == ReconciliationAction.DOWNLOAD
        assert decision.slot_key == 'bodyM'

    def test_missing_tagged_slot_is_noop(self, snapshot):
        """Test a gender tag with no remote slot and no local measurement does nothing."""
        assert decide(None, snapshot, local_gender='M').action == ReconciliationAction.NO_OP


class TestReconciliationEngine:
    """Test ReconciliationEngine runs."""

    @pytest.fixture
    def store(self, context):
        return CredentialStore(context.storage, context.bus, instance_id='session-1')

    @pytest.fixture
    def engine(self, store, gateway, context):
        """Create an engine with the fake gateway."""
        return ReconciliationEngine(store, gateway, context)

    @pytest.fixture
    def credential(self):
        return AccessToken('access-1', refresh_token='refresh-1')

    @pytest.mark.asyncio
    async def test_upload(self, engine, store, gateway, credential):
        """Test a local-only measurement is uploaded and becomes the default slot."""
        store.set_local_measurement(local(170, 65, tag='F'))

        result = await engine.run(ProfileSnapshot(), credential)

        assert result.action == ReconciliationAction.UPLOAD
        assert gateway.update_calls == [('bodyF', {'HV': 170, 'WV': 65, 'Gender': 'F'}, 'bodyF')]
        assert store.get_profile_snapshot().default_slot == 'bodyF'
        assert store.get_local_measurement() is None

    @pytest.mark.asyncio
    async def test_upload_keeps_existing_default(self, engine, store, gateway, credential):
        """Test uploading into a new slot leaves the default pointer alone."""
        store.set_local_measurement(local(180, 80, tag='M'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

        await engine.run(snapshot, credential)

        assert gateway.update_calls[0][2] is None
        assert store.get_profile_snapshot().default_slot == 'bodyF'

    @pytest.mark.asyncio
    async def test_upload_then_fresh_session_downloads_same_values(self, engine, store, gateway,
                                                                   credential):
        """Test a measurement uploaded in one session comes back in the next."""
        store.set_local_measurement(local(170, 65, tag='F'))
        await engine.run(ProfileSnapshot(), credential)

        result = await engine.run(gateway.snapshot, credential)

        assert result.action == ReconciliationAction.DOWNLOAD
        restored = store.get_local_measurement()
        assert restored.measurement.matches(Measurement(height=170, weight=65, gender='F'))

    @pytest.mark.asyncio
    async def test_upload_failure_changes_nothing(self, engine, store, gateway, credential):
        """Test a failed upload keeps the local measurement and the cached profile."""
        store.set_local_measurement(local(170, 65, tag='F'))
        gateway.fail_with['update_slot'] = GatewayError("unavailable", status_code=503)

        with pytest.raises(ReconciliationError) as exc_info:
            await engine.run(ProfileSnapshot(), credential)

        assert exc_info.value.error_code == ErrorCode.RECONCILIATION_UPLOAD_FAILED
        assert len(gateway.update_calls) == 1
        assert store.get_local_measurement() is not None
        assert store.get_profile_snapshot() is None

    @pytest.mark.asyncio
    async def test_upload_unauthorized_propagates(self, engine, store, gateway, credential):
        """Test a 401 during upload is left to the session controller."""
        store.set_local_measurement(local(170, 65, tag='F'))
        gateway.fail_with['update_slot'] = CredentialInvalidError()

        with pytest.raises(CredentialInvalidError):
            await engine.run(ProfileSnapshot(), credential)

    @pytest.mark.asyncio
    async def test_download(self, engine, store, gateway, credential):
        """Test the remote slot becomes the local measurement without another fetch."""
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

        result = await engine.run(snapshot, credential)

        assert result.action == ReconciliationAction.DOWNLOAD
        assert store.get_local_measurement().measurement.height == 165
        assert store.get_local_gender() == 'F'
        assert gateway.exchange_calls == []

    @pytest.mark.asyncio
    async def test_discard_local(self, engine, store, gateway, credential):
        """Test an equal local copy is removed without network calls."""
        store.set_local_measurement(local(165, 55, tag='F'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

        result = await engine.run(snapshot, credential)

        assert result.action == ReconciliationAction.DISCARD_LOCAL
        assert store.get_local_measurement() is None
        assert gateway.update_calls == []

    @pytest.mark.asyncio
    async def test_ask_user_use_local(self, engine, store, gateway, credential):
        """Test choosing the local version uploads it."""
        store.set_local_measurement(local(170, 60, tag='F'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')
        prompted = Mock()
        engine.add_prompt_callback(prompted)

        task = asyncio.ensure_future(engine.run(snapshot, credential))
        prompt = await wait_for_prompt(engine)
        assert prompt.local.height == 170
        assert prompt.remote.height == 165
        prompted.assert_called_once_with(prompt)

        assert engine.resolve(ReconciliationChoice.USE_LOCAL)
        result = await task

        assert result.choice == ReconciliationChoice.USE_LOCAL
        assert gateway.snapshot.slots['bodyF']['HV'] == 170
        assert store.get_local_measurement() is None
        assert engine.pending_prompt is None

    @pytest.mark.asyncio
    async def test_ask_user_use_remote(self, engine, store, gateway, credential):
        """Test choosing the remote version overwrites the local one."""
        store.set_local_measurement(local(170, 60, tag='F'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

        task = asyncio.ensure_future(engine.run(snapshot, credential))
        await wait_for_prompt(engine)
        engine.resolve(ReconciliationChoice.USE_REMOTE)
        result = await task

        assert result.choice == ReconciliationChoice.USE_REMOTE
        assert store.get_local_measurement().measurement.height == 165
        assert gateway.update_calls == []

    @pytest.mark.asyncio
    async def test_ask_user_declined(self, engine, store, credential, context):
        """Test a dismissed prompt keeps the local measurement for next time."""
        store.set_local_measurement(local(170, 60, tag='F'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')

        task = asyncio.ensure_future(engine.run(snapshot, credential))
        await wait_for_prompt(engine)
        assert context.prompt_open
        engine.cancel_pending()
        result = await task

        assert result.completed is False
        assert store.get_local_measurement() is not None
        assert not context.prompt_open

    @pytest.mark.asyncio
    async def test_only_one_prompt_per_process(self, engine, store, credential, context):
        """Test a second instance does not open another prompt."""
        store.set_local_measurement(local(170, 60, tag='F'))
        snapshot = ProfileSnapshot(slots={'bodyF': {'HV': 165, 'WV': 55}}, default_slot='bodyF')
        prompted = Mock()
        engine.add_prompt_callback(prompted)
        context.claim_prompt('session-2')

        result = await engine.run(snapshot, credential)

        assert result.completed is False
        prompted.assert_not_called()

    def test_resolve_without_prompt(self, engine):
        """Test answering when nothing is open."""
        assert engine.resolve(ReconciliationChoice.USE_LOCAL) is False

    @pytest.mark.asyncio
    async def test_duplicate_slot_removed_after_download(self, engine, store, gateway, credential):
        """Test the previous gender's slot is deleted when it duplicates the chosen one."""
        store.set_local_measurement(local(170, 60, gender='F', tag='M'))
        snapshot = ProfileSnapshot(
            slots={'bodyF': {'HV': 165, 'WV': 55}, 'bodyM': {'HV': 165, 'WV': 55}},
            default_slot='bodyF'
        )
        gateway.snapshot = snapshot.copy()

        task = asyncio.ensure_future(engine.run(snapshot, credential))
        await wait_for_prompt(engine)
        engine.resolve(ReconciliationChoice.USE_REMOTE)
        result = await task

        assert gateway.delete_calls == ['bodyM']
        assert set(store.get_profile_snapshot().slots) == {'bodyF'}
        assert result.snapshot == store.get_profile_snapshot()

    @pytest.mark.asyncio
    async def test_duplicate_slot_removal_failure_is_absorbed(self, engine, store, gateway, credential):
        """Test a failed cleanup does not undo the download."""
        store.set_local_measurement(local(170, 60, gender='F', tag='M'))
        snapshot = ProfileSnapshot(
            slots={'bodyF': {'HV': 165, 'WV': 55}, 'bodyM': {'HV': 165, 'WV': 55}},
            default_slot='bodyF'
        )
        gateway.fail_with['delete_slot'] = GatewayError("unavailable")

        task = asyncio.ensure_future(engine.run(snapshot, credential))
        await wait_for_prompt(engine)
        engine.resolve(ReconciliationChoice.USE_REMOTE)
        result = await task

        assert result.choice == ReconciliationChoice.USE_REMOTE
        assert store.get_local_measurement().measurement.height == 165
