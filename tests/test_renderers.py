"""
Channel payload validation and rendering.
"""
from datetime import date, datetime

import pytest

from relay.core.exceptions import DeliveryError, ErrorCode
from relay.domain.services.renderers import (
    CalendarPayload,
    PushPayload,
    TrackEventPayload,
    TrackInfo,
    build_submission_line,
    parse_payload,
    render_communication,
    render_google_event,
    render_microsoft_event,
    render_push,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _track(**overrides) -> dict:
    fields = {
        "artist_name": "Night Tempo",
        "title": "Plastic Love",
        "sc_link": "https://soundcloud.com/night-tempo/plastic-love",
        "release_date": "2026-04-03",
    }
    fields.update(overrides)
    return {"track": fields}


class TestParsePayload:

    @pytest.mark.unit
    def test_invalid_payload_is_a_delivery_error(self):
        with pytest.raises(DeliveryError) as exc:
            parse_payload(PushPayload, {"title": "missing body"})
        assert exc.value.error_code == ErrorCode.DELIVERY_PAYLOAD_INVALID

    @pytest.mark.unit
    def test_none_payload(self):
        with pytest.raises(DeliveryError):
            parse_payload(TrackEventPayload, None)


class TestChatRendering:

    @pytest.mark.unit
    def test_submission_line(self):
        track = TrackInfo(artist_name="A", title="B", created_at=datetime(2026, 3, 1, 9, 30))
        assert build_submission_line(track) == "New submission: A — B • 2026-03-01 09:30 UTC"

    @pytest.mark.unit
    def test_missing_names_fall_back(self):
        assert build_submission_line(TrackInfo()) == "New submission: Unknown Artist — Untitled"

    @pytest.mark.unit
    def test_slack_without_link_has_one_block(self):
        payload = parse_payload(TrackEventPayload, _track(sc_link=None))
        assert len(render_communication("slack", payload)["blocks"]) == 1

    @pytest.mark.unit
    def test_generic_platform_carries_track(self):
        payload = parse_payload(TrackEventPayload, _track())
        body = render_communication("telegram", payload)
        assert body["track"]["release_date"] == "2026-04-03"
        assert body["text"].startswith("New submission")


class TestCalendarRendering:

    @pytest.mark.unit
    def test_google_follow_up(self):
        event = render_google_event("follow_up_reminder", parse_payload(CalendarPayload, _track()), NOW)
        assert event["start"] == {"dateTime": "2026-03-03T12:00:00Z"}
        assert event["end"] == {"dateTime": "2026-03-03T12:15:00Z"}
        assert event["description"] == "Listen: https://soundcloud.com/night-tempo/plastic-love"

    @pytest.mark.unit
    def test_microsoft_release_is_all_day(self):
        event = render_microsoft_event("label_master_release", parse_payload(CalendarPayload, _track()), NOW)
        assert event["isAllDay"] is True
        assert event["start"] == {"dateTime": "2026-04-03T00:00:00Z", "timeZone": "UTC"}
        assert event["end"] == {"dateTime": "2026-04-04T00:00:00Z", "timeZone": "UTC"}

    @pytest.mark.unit
    @pytest.mark.parametrize("render", [render_google_event, render_microsoft_event])
    def test_release_needs_a_date(self, render):
        payload = parse_payload(CalendarPayload, _track(release_date=None))
        with pytest.raises(DeliveryError):
            render("label_master_release", payload, NOW)

    @pytest.mark.unit
    @pytest.mark.parametrize("render", [render_google_event, render_microsoft_event])
    def test_unknown_job_type(self, render):
        with pytest.raises(DeliveryError):
            render("birthday", parse_payload(CalendarPayload, _track()), NOW)

    @pytest.mark.unit
    def test_release_date_is_parsed(self):
        assert parse_payload(CalendarPayload, _track()).track.release_date == date(2026, 4, 3)


class TestPushRendering:

    @pytest.mark.unit
    def test_default_url(self):
        assert render_push(PushPayload(title="t", body="b")) == {"title": "t", "body": "b", "url": "/"}
