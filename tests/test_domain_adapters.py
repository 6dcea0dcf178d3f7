from datetime import datetime, timedelta, timezone

import pytest

from ccsync.config import AppConfig
from ccsync.core.models import EventKind
from ccsync.domains.adapters import (
    build_adapters,
    callbacks_adapter,
    campaign_calls_adapter,
    campaigns_adapter,
    inbound_calls_adapter,
    queue_adapter,
    queue_wait_time,
    voicemail_adapter,
)


class TestInboundCallsAdapter:

    @pytest.fixture
    def adapter(self):
        return inbound_calls_adapter()

    def test_received_creates_ringing_call(self, adapter):
        event = adapter.translate(
            "inbound:call:received",
            {"callId": "C1", "from": "+15550100", "timestamp": "2026-03-02T09:00:00Z"},
        )
        assert event.kind is EventKind.CREATED
        assert event.entity_id == "C1"
        assert event.status == "ringing"
        assert event.fields["direction"] == "inbound"
        assert event.stamp_field == "receivedAt"
        assert event.occurred_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert "timestamp" not in event.fields

    def test_answered_renames_agent(self, adapter):
        event = adapter.translate("inbound:call:answered", {"callId": "C1", "agent": "alice"})
        assert event.status == "in-progress"
        assert event.fields["answeredBy"] == "alice"
        assert "agent" not in event.fields

    def test_ended_is_removal_defaulting_to_completed(self, adapter):
        event = adapter.translate("inbound:call:ended", {"callId": "C1", "duration": 42})
        assert event.kind is EventKind.REMOVED
        assert event.status == "completed"
        assert event.stamp_field == "endedAt"

        no_answer = adapter.translate("inbound:call:ended", {"callId": "C2", "status": "no-answer"})
        assert no_answer.status == "no-answer"

    def test_unbound_event_is_ignored(self, adapter):
        assert adapter.translate("agent:status:change", {"agentId": "a1"}) is None

    def test_non_mapping_payload_has_no_key(self, adapter):
        event = adapter.translate("inbound:call:received", "garbage")
        assert event.entity_id is None

    def test_snapshot_row_uses_mongo_id(self, adapter):
        entity = adapter.entity_from_row({"_id": "abc", "status": "ringing", "from": "+1"})
        assert entity.entity_id == "abc"
        assert entity.status == "ringing"
        assert "status" not in entity.data

    def test_snapshot_row_without_key_is_skipped(self, adapter):
        assert adapter.entity_from_row({"from": "+1"}) is None
        assert adapter.entities_from_rows([{"from": "+1"}, {"_id": "x"}])[0].entity_id == "x"


class TestQueueAdapter:

    @pytest.fixture
    def adapter(self):
        return queue_adapter()

    def test_added_applies_defaults(self, adapter):
        event = adapter.translate("queue:caller:added", {"callId": "Q1", "position": 1})
        assert event.kind is EventKind.CREATED
        assert event.status == "waiting"
        assert event.fields["priority"] == "normal"
        assert event.fields["waitTime"] == 0
        assert event.stamp_field == "joinedAt"

    def test_added_keeps_wire_priority(self, adapter):
        event = adapter.translate("queue:caller:added", {"callId": "Q1", "priority": "vip"})
        assert event.fields["priority"] == "vip"

    def test_removed_is_terminal(self, adapter):
        event = adapter.translate("queue:caller:removed", {"callId": "Q1"})
        assert event.kind is EventKind.REMOVED
        assert event.status in adapter.terminal_statuses

    def test_position_update(self, adapter):
        event = adapter.translate("queue:position:update", {"callId": "Q1", "position": 2, "waitTime": 9})
        assert event.kind is EventKind.POSITION_UPDATED
        assert event.fields == {"callId": "Q1", "position": 2, "waitTime": 9}
        assert event.status is None

    def test_full_queue_update_replaces(self, adapter):
        event = adapter.translate(
            "queue:update",
            {"queue": [{"callId": "Q1", "position": 1}, {"position": 2}, {"callId": "Q3"}]},
        )
        assert event.kind is EventKind.REPLACED
        assert [e.entity_id for e in event.rows] == ["Q1", "Q3"]
        assert all(e.status == "waiting" for e in event.rows)

    def test_wait_time_tick_floors_elapsed_seconds(self, adapter):
        joined = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
        entity = adapter.entity_from_row({"callId": "Q1", "joinedAt": joined.isoformat()})
        now = joined + timedelta(seconds=12.9)
        assert queue_wait_time(entity, now) == {"waitTime": 12}
        assert adapter.tick is queue_wait_time

    def test_wait_time_never_negative(self, adapter):
        joined = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
        entity = adapter.entity_from_row({"callId": "Q1", "joinedAt": joined.isoformat()})
        assert queue_wait_time(entity, joined - timedelta(seconds=3)) == {"waitTime": 0}


class TestCampaignAdapters:

    def test_campaign_calls_scope_filters_other_campaigns(self):
        adapter = campaign_calls_adapter("K1")
        assert adapter.endpoint == "/api/campaigns/K1/calls"
        assert adapter.history_capacity == 100
        assert adapter.translate("call:initiated", {"callId": "C1", "campaignId": "K2"}) is None
        event = adapter.translate("call:initiated", {"callId": "C1", "campaignId": "K1"})
        assert event.status == "initiated"

    def test_campaign_calls_requires_id(self):
        with pytest.raises(ValueError):
            campaign_calls_adapter("")

    def test_generic_status_update_takes_wire_status(self):
        adapter = campaign_calls_adapter("K1")
        event = adapter.translate("call:status:update", {"callId": "C1", "campaignId": "K1", "status": "busy"})
        assert event.status == "busy"
        assert event.status in adapter.terminal_statuses

    def test_campaign_events_and_stats_merge(self, clock):
        adapter = campaigns_adapter()
        engine = adapter.build_engine(clock)
        engine.apply_snapshot(
            adapter.entities_from_rows(
                [{"_id": "K1", "status": "draft", "statistics": {"dialed": 4, "answered": 1}}],
                clock(),
            )
        )
        engine.apply_event(adapter.translate("campaign:started", {"campaignId": "K1"}))
        engine.apply_event(
            adapter.translate("campaign:stats:update", {"campaignId": "K1", "statistics": {"answered": 3}})
        )
        stored = engine.get("K1")
        assert stored.status == "running"
        assert stored.data["statistics"] == {"dialed": 4, "answered": 3}

        engine.apply_event(adapter.translate("campaign:stopped", {"campaignId": "K1"}))
        assert engine.get("K1") is None
        assert engine.history()[0].status == "stopped"


class TestCallbackAndVoicemailAdapters:

    def test_scheduled_callback_unwraps_nested_record(self):
        adapter = callbacks_adapter()
        event = adapter.translate(
            "callback:scheduled",
            {"callbackId": "B1", "callback": {"_id": "B1", "phoneNumber": "+15550111", "status": "scheduled"}},
        )
        assert event.entity_id == "B1"
        assert event.status == "scheduled"
        assert event.fields["phoneNumber"] == "+15550111"
        assert "callback" not in event.fields

    def test_callback_due_flags_record(self):
        adapter = callbacks_adapter()
        event = adapter.translate("callback:due", {"callbackId": "B1"})
        assert event.status == "due"
        assert event.fields["isDue"] is True

    def test_callback_status_update_and_cancel(self, clock):
        adapter = callbacks_adapter()
        engine = adapter.build_engine(clock)
        engine.apply_event(adapter.translate("callback:scheduled", {"callback": {"_id": "B1", "status": "scheduled"}}))
        engine.apply_event(adapter.translate("callback:status:update", {"callbackId": "B1", "status": "in-progress"}))
        assert engine.get("B1").status == "in-progress"

        engine.apply_event(adapter.translate("callback:cancelled", {"callbackId": "B1"}))
        assert engine.get("B1") is None
        assert engine.history()[0].status == "cancelled"
        assert engine.history()[0].data["cancelledAt"] is not None

    def test_voicemail_flow(self, clock):
        adapter = voicemail_adapter()
        engine = adapter.build_engine(clock)
        engine.apply_event(
            adapter.translate("voicemail:received", {"voicemail": {"_id": "V1", "from": "+1", "duration": 30}})
        )
        engine.apply_event(
            adapter.translate("voicemail:transcribed", {"voicemailId": "V1", "transcription": "hello"})
        )
        stored = engine.get("V1")
        assert stored.status == "new"
        assert stored.data["transcription"] == "hello"
        assert stored.data["transcriptionStatus"] == "completed"
        assert adapter.aggregates(engine.view()).flags == {"unread": 1}

        engine.apply_event(adapter.translate("voicemail:deleted", {"voicemailId": "V1"}))
        assert engine.live() == []


class TestBuildAdapters:

    def test_defaults_skip_campaign_calls(self):
        adapters = build_adapters(AppConfig())
        assert sorted(adapters) == ["callbacks", "campaigns", "inbound_calls", "queue", "voicemail"]

    def test_campaign_calls_and_overrides(self):
        config = AppConfig(
            domains={
                "campaign_calls": {"enabled": True, "campaign_id": "K9"},
                "inbound_calls": {"history_capacity": 5},
                "voicemail": {"enabled": False},
            },
            queue={"tick_interval_seconds": 0.5},
        )
        adapters = build_adapters(config)
        assert "voicemail" not in adapters
        assert adapters["campaign_calls"].endpoint == "/api/campaigns/K9/calls"
        assert adapters["inbound_calls"].history_capacity == 5
        assert adapters["queue"].tick_interval == 0.5

    def test_enabled_campaign_calls_without_id_is_skipped(self):
        config = AppConfig(domains={"campaign_calls": {"enabled": True}})
        assert "campaign_calls" not in build_adapters(config)
