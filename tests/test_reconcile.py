"""Tests for mesh reconciliation and presence sync."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlmodel import select

from meshenroll.audit.models import AuditLog
from meshenroll.enrollment.reconcile import match_device, reconcile, sync_all
from meshenroll.enrollment.tokens import generate_token, revoke_device, silent_enroll
from meshenroll.errors import DeviceNotFoundError, UpstreamError
from meshenroll.mesh.base import MeshDevice
from meshenroll.mesh.mock import MockDirectory
from meshenroll.registry.models import Device, DeviceEvent, DeviceStatus, TrustLevel
from meshenroll.registry.store import activate_if_pending, as_utc, merge_metadata


def _pending_laptop(session, user):
    return generate_token(
        session,
        owner_id=user.id,
        tenant_id=user.tenant_id,
        device_name="Laptop",
        device_type="laptop",
        os="macOS",
    )


def _event_types(session, device_id: str) -> list[str]:
    stmt = select(DeviceEvent).where(DeviceEvent.device_id == device_id)
    return [e.event_type for e in session.exec(stmt).all()]


def _reload(session, device_id: str) -> Device:
    session.expire_all()
    return session.get(Device, device_id)


class TestMatchDevice:
    def _device(self, **kwargs) -> Device:
        return Device(owner_id="u", name=kwargs.pop("name", "Laptop"), **kwargs)

    def test_stored_id_wins(self):
        device = self._device(external_device_id="n2")
        a = MeshDevice(id="n1", hostname="laptop")
        b = MeshDevice(id="n2", hostname="other")
        assert match_device(device, [a, b]) is b

    def test_stored_hostname(self):
        device = self._device(external_hostname="Work-Box")
        candidate = MeshDevice(id="n1", hostname="work-box")
        assert match_device(device, [candidate]) is candidate

    def test_explicit_hostname_hint(self):
        device = self._device(name="Whatever")
        candidate = MeshDevice(id="n1", hostname="ci-runner")
        assert match_device(device, [candidate], hostname="ci-runner") is candidate

    def test_metadata_hint(self):
        device = self._device(name="Whatever", meta={"hostname_hint": "studio"})
        candidate = MeshDevice(id="n1", hostname="studio")
        assert match_device(device, [candidate]) is candidate

    def test_name_hint_against_dns_label(self):
        device = self._device(name="Alice's MacBook")
        candidate = MeshDevice(id="n1", hostname="", name="alice-s-macbook.tail1234.ts.net")
        assert match_device(device, [candidate]) is candidate

    def test_no_match(self):
        device = self._device(name="Laptop")
        assert match_device(device, [MeshDevice(id="n1", hostname="desktop")]) is None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_scenario_a_not_yet_visible(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()

        result = await reconcile(session, directory, grant.device_id)
        assert result.connected is False
        assert result.status == DeviceStatus.pending

        device = _reload(session, grant.device_id)
        assert device.status == DeviceStatus.pending
        assert device.enrollment_token == grant.token

    @pytest.mark.asyncio
    async def test_scenario_b_transitions_to_active(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        joined = directory.join("laptop")

        result = await reconcile(session, directory, grant.device_id, ip_address="203.0.113.7")
        assert result.connected is True
        assert result.status == DeviceStatus.active
        assert result.hostname == "laptop"
        assert result.ip == joined.primary_ip

        device = _reload(session, grant.device_id)
        assert device.status == DeviceStatus.active
        assert device.trust_level == TrustLevel.high
        assert device.enrollment_token is None
        assert device.external_auth_key is None
        assert device.external_device_id == joined.id
        assert device.external_hostname == "laptop"
        assert device.external_ip == joined.primary_ip
        assert device.enrolled_at is not None
        assert "tailscale_connected" in _event_types(session, device.id)

        audit = session.exec(select(AuditLog)).all()
        assert [a.event for a in audit] == ["device_enrolled_tailscale"]
        assert audit[0].actor_id == user.id

    @pytest.mark.asyncio
    async def test_idempotent_once_active(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.join("laptop")

        first = await reconcile(session, directory, grant.device_id)
        directory.calls.clear()
        second = await reconcile(session, directory, grant.device_id)

        assert first == second
        assert directory.calls == []
        assert _event_types(session, grant.device_id).count("tailscale_connected") == 1

    @pytest.mark.asyncio
    async def test_active_never_regresses(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.join("laptop")
        await reconcile(session, directory, grant.device_id)

        # Provider now reports nothing at all
        directory.devices.clear()
        result = await reconcile(session, directory, grant.device_id)
        assert result.connected is True
        assert _reload(session, grant.device_id).status == DeviceStatus.active

    @pytest.mark.asyncio
    async def test_upstream_failure_leaves_row_unchanged(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.join("laptop")
        directory.fail_listing = True

        result = await reconcile(session, directory, grant.device_id)
        assert result.connected is False

        device = _reload(session, grant.device_id)
        assert device.status == DeviceStatus.pending
        assert device.enrollment_token == grant.token
        assert device.external_device_id is None
        assert _event_types(session, device.id) == ["enrollment_initiated"]

    @pytest.mark.asyncio
    async def test_auth_failure_leaves_row_unchanged(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.fail_auth = True

        result = await reconcile(session, directory, grant.device_id)
        assert result.connected is False
        assert _reload(session, grant.device_id).status == DeviceStatus.pending

    @pytest.mark.asyncio
    async def test_lost_race_is_silent(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.join("laptop")

        def _concurrent_winner(sess, device_id, **kwargs):
            # Another writer activates the row first; our guarded update then misses
            activate_if_pending(
                sess,
                device_id,
                external_device_id="winner",
                external_hostname="laptop-2",
                external_ip="100.64.0.99",
                now=kwargs["now"],
            )
            sess.commit()
            return False

        with patch(
            "meshenroll.enrollment.reconcile.activate_if_pending",
            side_effect=_concurrent_winner,
        ):
            result = await reconcile(session, directory, grant.device_id)

        assert result.connected is True
        assert result.hostname == "laptop-2"
        device = _reload(session, grant.device_id)
        assert device.external_device_id == "winner"
        assert "tailscale_connected" not in _event_types(session, device.id)
        assert session.exec(select(AuditLog)).all() == []

    @pytest.mark.asyncio
    async def test_node_links_to_one_device(self, session, user, tenant_key):
        first = _pending_laptop(session, user)
        second = _pending_laptop(session, user)
        directory = MockDirectory()
        node = directory.join("laptop")

        assert (await reconcile(session, directory, first.device_id)).connected is True
        result = await reconcile(session, directory, second.device_id)
        assert result.connected is False
        assert result.status == DeviceStatus.pending
        assert _reload(session, second.device_id).external_device_id is None

        # A second machine with the same hostname is free to link
        other = directory.join("laptop")
        result = await reconcile(session, directory, second.device_id)
        assert result.connected is True
        assert _reload(session, first.device_id).external_device_id == node.id
        assert _reload(session, second.device_id).external_device_id == other.id

    @pytest.mark.asyncio
    async def test_revoked_device_releases_node(self, session, admin, user, tenant_key):
        directory = MockDirectory()
        node = directory.join("laptop")
        old = _pending_laptop(session, user)
        await reconcile(session, directory, old.device_id)
        revoke_device(session, admin.id, old.device_id)

        replacement = _pending_laptop(session, user)
        result = await reconcile(session, directory, replacement.device_id)
        assert result.connected is True
        assert _reload(session, replacement.device_id).external_device_id == node.id

    @pytest.mark.asyncio
    async def test_revoked_device_not_connected(self, session, admin, user, tenant_key):
        grant = _pending_laptop(session, user)
        revoke_device(session, admin.id, grant.device_id)
        directory = MockDirectory()
        directory.join("laptop")

        result = await reconcile(session, directory, grant.device_id)
        assert result.connected is False
        assert result.status == DeviceStatus.revoked
        assert _reload(session, grant.device_id).status == DeviceStatus.revoked

    @pytest.mark.asyncio
    async def test_unknown_device(self, session):
        with pytest.raises(DeviceNotFoundError):
            await reconcile(session, MockDirectory(), "missing")

    @pytest.mark.asyncio
    async def test_active_implies_no_secrets(self, session, user, tenant_key):
        directory = MockDirectory()
        for name in ("Laptop", "Desk", "Phone"):
            grant = generate_token(session, user.id, user.tenant_id, device_name=name)
            directory.join(name.lower())
            await reconcile(session, directory, grant.device_id)
        silent_enroll(session, user.id, user.tenant_id, None, None, None, "fp-1")

        session.expire_all()
        active = session.exec(select(Device).where(Device.status == DeviceStatus.active)).all()
        assert len(active) == 4
        for device in active:
            assert device.enrollment_token is None
            assert device.external_auth_key is None


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_refreshes_presence_without_touching_status(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        joined = directory.join("laptop")
        await reconcile(session, directory, grant.device_id)

        old = datetime.now(UTC) - timedelta(hours=2)
        device = _reload(session, grant.device_id)
        device.last_seen_at = old
        session.add(device)
        session.commit()

        directory.set_online(joined.id, False)
        result = await sync_all(session, directory)
        assert result.synced == 1
        assert result.total_upstream == 1

        device = _reload(session, grant.device_id)
        assert device.status == DeviceStatus.active
        assert device.meta["mesh_online"] is False
        assert abs(as_utc(device.last_seen_at) - old) < timedelta(seconds=1)

        directory.set_online(joined.id, True)
        await sync_all(session, directory)
        device = _reload(session, grant.device_id)
        assert device.meta["mesh_online"] is True
        assert device.meta["mesh_ip"] == joined.primary_ip
        assert as_utc(device.last_seen_at) > old + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_pending_and_unlinked_devices_skipped(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        silent_enroll(session, user.id, user.tenant_id, None, None, None, "fp-1")
        directory = MockDirectory()
        directory.join("laptop")

        result = await sync_all(session, directory)
        assert result.synced == 0
        assert _reload(session, grant.device_id).status == DeviceStatus.pending

    @pytest.mark.asyncio
    async def test_keeps_other_metadata(self, session, user, tenant_key):
        grant = _pending_laptop(session, user)
        directory = MockDirectory()
        directory.join("laptop")
        await reconcile(session, directory, grant.device_id)

        device = _reload(session, grant.device_id)
        merge_metadata(device, note="keep me")
        session.add(device)
        session.commit()

        await sync_all(session, directory)
        device = _reload(session, grant.device_id)
        assert device.meta["note"] == "keep me"
        assert device.meta["mesh_group"] == "sap"

    @pytest.mark.asyncio
    async def test_upstream_errors_propagate(self, session):
        directory = MockDirectory()
        directory.fail_listing = True
        with pytest.raises(UpstreamError):
            await sync_all(session, directory)
