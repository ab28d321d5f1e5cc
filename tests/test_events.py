import asyncio

import pytest

from ralph.events import (
    ChannelClosedError,
    ChoiceReply,
    Complete,
    CompletionChoice,
    ErrorEvent,
    EventChannel,
)


def test_offer_drops_when_full() -> None:
    async def scenario() -> list:
        channel = EventChannel(capacity=2)
        assert channel.sender.offer(ErrorEvent("a"))
        assert channel.sender.offer(ErrorEvent("b"))
        assert not channel.sender.offer(ErrorEvent("c"))
        channel.sender.close()
        return [event async for event in channel.receiver]

    assert asyncio.run(scenario()) == [ErrorEvent("a"), ErrorEvent("b")]


def test_send_waits_for_capacity() -> None:
    async def scenario() -> list:
        channel = EventChannel(capacity=1)
        await channel.sender.send(ErrorEvent("first"))
        blocked = asyncio.create_task(channel.sender.send(Complete()))
        await asyncio.sleep(0.1)
        assert not blocked.done()
        received = [await channel.receiver.recv()]
        await asyncio.wait_for(blocked, 1.0)
        received.append(await channel.receiver.recv())
        return received

    assert asyncio.run(scenario()) == [ErrorEvent("first"), Complete()]


def test_send_on_closed_channel_raises() -> None:
    async def scenario() -> None:
        channel = EventChannel(capacity=1)
        await channel.sender.send(ErrorEvent("fills the buffer"))
        blocked = asyncio.create_task(channel.sender.send(Complete()))
        await asyncio.sleep(0.05)
        channel.receiver.close()
        with pytest.raises(ChannelClosedError):
            await asyncio.wait_for(blocked, 1.0)
        with pytest.raises(ChannelClosedError):
            await channel.sender.send(Complete())
        assert not channel.sender.offer(Complete())

    asyncio.run(scenario())


def test_recv_returns_none_once_closed_and_drained() -> None:
    async def scenario() -> list:
        channel = EventChannel(capacity=4)
        channel.sender.offer(ErrorEvent("x"))
        channel.sender.close()
        return [await channel.receiver.recv(), await channel.receiver.recv()]

    assert asyncio.run(scenario()) == [ErrorEvent("x"), None]


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventChannel(capacity=0)


def test_choice_reply_is_one_shot() -> None:
    async def scenario() -> CompletionChoice:
        reply = ChoiceReply()
        assert not reply.sent
        assert reply.send(CompletionChoice.CLEANUP)
        assert not reply.send(CompletionChoice.KEEP)
        assert reply.sent
        return await reply.wait()

    assert asyncio.run(scenario()) is CompletionChoice.CLEANUP
