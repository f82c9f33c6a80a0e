import pytest

from review_rag.streaming import DELTA, DONE, ERROR, RESET, ChannelClosed, ContentChannel


async def _drain(channel):
    return [(e.kind, e.text) async for e in channel.events()]


class TestContentChannel:
    @pytest.mark.asyncio
    async def test_events_arrive_in_order_and_end_with_done(self):
        channel = ContentChannel()
        await channel.publish("a")
        await channel.reset()
        await channel.publish("b")
        await channel.finish()

        assert await _drain(channel) == [(DELTA, "a"), (RESET, ""), (DELTA, "b"), (DONE, "")]

    @pytest.mark.asyncio
    async def test_failure_ends_the_stream(self):
        channel = ContentChannel()
        await channel.publish("a")
        await channel.fail("all models failed")

        assert await _drain(channel) == [(DELTA, "a"), (ERROR, "all models failed")]

    @pytest.mark.asyncio
    async def test_publish_after_cancel_raises(self):
        channel = ContentChannel()
        await channel.publish("queued")
        channel.cancel()

        assert channel.cancelled
        with pytest.raises(ChannelClosed):
            await channel.publish("more")
        # finish and fail are silent once nobody listens
        await channel.finish()
        await channel.fail("x")

    @pytest.mark.asyncio
    async def test_publish_after_finish_raises(self):
        channel = ContentChannel()
        await channel.finish()

        with pytest.raises(ChannelClosed):
            await channel.publish("late")

    @pytest.mark.asyncio
    async def test_consumer_leaving_early_cancels(self):
        channel = ContentChannel()
        await channel.publish("a")
        await channel.publish("b")

        events = channel.events()
        first = await events.__anext__()
        await events.aclose()

        assert first.text == "a"
        assert channel.cancelled
        with pytest.raises(ChannelClosed):
            await channel.publish("c")
