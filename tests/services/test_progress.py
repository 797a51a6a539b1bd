"""
Tests for the per-run progress channel and SSE framing.
"""
import json

import pytest

from pars.services.progress import (
    EVENT_COMPLETE,
    EVENT_INIT,
    EVENT_STEP,
    ProgressChannel,
    ProgressEvent,
    format_sse,
)


class TestProgressChannel:

    @pytest.mark.asyncio
    async def test_drains_in_order_until_closed(self):
        channel = ProgressChannel()
        channel.publish(EVENT_INIT, {"logId": "abc"})
        channel.publish(EVENT_STEP, {"index": 0})
        channel.publish(EVENT_COMPLETE, {"status": "SUCCESS"})
        channel.close()

        events = [event async for event in channel]

        assert [event.kind for event in events] == [EVENT_INIT, EVENT_STEP, EVENT_COMPLETE]
        assert events[0].data == {"logId": "abc"}
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_publish_after_close_is_dropped(self):
        channel = ProgressChannel()
        channel.publish(EVENT_INIT, {})
        channel.close()
        channel.publish(EVENT_STEP, {"index": 0})
        channel.close()

        events = [event async for event in channel]

        assert [event.kind for event in events] == [EVENT_INIT]


class TestFormatSse:

    def test_frame_layout(self):
        frame = format_sse(ProgressEvent(kind=EVENT_STEP, data={"index": 2, "step": {"name": "Dependencies"}}))

        assert frame.startswith("event: step\ndata: ")
        assert frame.endswith("\n\n")
        payload = frame[len("event: step\ndata: "):-2]
        assert json.loads(payload) == {"index": 2, "step": {"name": "Dependencies"}}

    def test_multiline_messages_stay_on_one_data_line(self):
        frame = format_sse(ProgressEvent(kind=EVENT_STEP, data={"message": "line one\nline two"}))

        assert frame.count("\n") == 3
