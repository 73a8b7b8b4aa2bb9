"""Tests for whole-file transfer over the direct channel."""

import random

import pytest

from common.checksum import compute_digest
from common.exceptions import ConnectionLostError
from common.protocol import (
    MESSAGE_HASH_MATCH,
    MESSAGE_HASH_MISMATCH,
    MESSAGE_HASH_VALUE,
    MESSAGE_META,
    META_CHUNK_INDEX,
    ChannelMessage,
    DataType,
)
from peer.cancellation import ABORTED, CancellationToken
from peer.channel import LoopbackChannel
from peer.direct_transfer import DirectReceiver, DirectSender
from tests.conftest import no_sleep


def connected(reject_on_mismatch=False, chunk_size=4, batch_size=2):
    """Sender on peer a and receiver on peer b joined by a loopback pair."""
    end_a, end_b = LoopbackChannel.pair('a', 'b')
    files = []
    verdicts = []
    sender = DirectSender('a', end_a.send, chunk_size=chunk_size, batch_size=batch_size, sleep=no_sleep)
    receiver = DirectReceiver(
        'b',
        on_file=files.append,
        on_integrity=lambda peer_id, file_id, status: verdicts.append(status.value),
        send=end_b.send,
        reject_on_mismatch=reject_on_mismatch,
    )

    async def on_a(peer_id, payload):
        sender.handle_message(peer_id, ChannelMessage.from_json(payload))

    async def on_b(peer_id, payload):
        await receiver.handle_message(peer_id, ChannelMessage.from_json(payload))

    end_a.set_handler(on_a)
    end_b.set_handler(on_b)
    return end_a, end_b, sender, receiver, files, verdicts


def meta(file_id, total, size, name='a.txt'):
    return ChannelMessage(
        DataType.FILE, file_id=file_id, file_name=name, file_size=size,
        chunk_index=META_CHUNK_INDEX, total_chunks=total, message=MESSAGE_META,
    )


def chunk(file_id, index, data, total):
    return ChannelMessage(DataType.FILE, file=data, file_id=file_id, chunk_index=index, total_chunks=total)


def file_hash(file_id, value):
    return ChannelMessage(DataType.FILE_HASH, file_id=file_id, file_hash=value, message=MESSAGE_HASH_VALUE)


class TestDirectSender:
    """Test sending over a loopback channel."""

    @pytest.mark.asyncio
    async def test_file_arrives_intact(self):
        end_a, end_b, sender, receiver, files, verdicts = connected()
        data = b'the quick brown fox jumps'
        progress = []

        result = await sender.send_file(
            'b', 'fox.txt', data, file_type='text/plain',
            on_progress=lambda file_id, sent, total: progress.append((sent, total)),
        )
        await end_b.drain()
        await end_a.drain()

        file_id, digest = result
        assert digest == compute_digest(data)
        assert len(files) == 1
        assert files[0].data == data
        assert files[0].file_name == 'fox.txt'
        assert files[0].file_type == 'text/plain'
        assert files[0].integrity == 'match'
        assert verdicts == ['match']
        assert sender.verdicts[file_id] == MESSAGE_HASH_MATCH
        assert progress == [(2, 7), (4, 7), (6, 7), (7, 7)]
        assert receiver.in_progress == 0

    @pytest.mark.asyncio
    async def test_message_count(self):
        end_a, end_b, sender, _, _, _ = connected(chunk_size=10, batch_size=16)
        await sender.send_file('b', 'a.bin', b'x' * 95)
        await end_b.drain()
        # META + 10 chunks + FILE_HASH
        assert end_a.sent_messages == 12

    @pytest.mark.asyncio
    async def test_empty_file(self):
        end_a, end_b, sender, _, files, _ = connected()
        await sender.send_file('b', 'empty', b'')
        await end_b.drain()
        assert files[0].data == b''
        assert files[0].integrity == 'match'

    @pytest.mark.asyncio
    async def test_cancelled_send(self):
        end_a, end_b, sender, receiver, files, _ = connected()
        token = CancellationToken()
        token.cancel()

        result = await sender.send_file('b', 'a.txt', b'abcdefgh', token=token)
        await end_b.drain()
        assert result is ABORTED
        assert files == []
        assert receiver.in_progress == 1
        assert receiver.discard_peer('a') == 1

    @pytest.mark.asyncio
    async def test_closed_channel(self):
        end_a, end_b, sender, _, _, _ = connected()
        end_b.close()
        with pytest.raises(ConnectionLostError):
            await sender.send_file('b', 'a.txt', b'abc')


class TestDirectReceiver:
    """Test reassembly from messages in arbitrary order."""

    @pytest.mark.asyncio
    async def test_out_of_order_with_early_digest(self):
        files = []
        receiver = DirectReceiver('b', on_file=files.append)
        data = bytes(range(200))
        pieces = [data[i:i + 16] for i in range(0, len(data), 16)]

        await receiver.handle_message('a', meta('f1', len(pieces), len(data)))
        await receiver.handle_message('a', file_hash('f1', compute_digest(data)))
        order = list(range(len(pieces)))
        random.Random(3).shuffle(order)
        for index in order:
            assert files == []
            await receiver.handle_message('a', chunk('f1', index, pieces[index], len(pieces)))

        assert files[0].data == data
        assert files[0].integrity == 'match'

    @pytest.mark.asyncio
    async def test_waits_for_digest(self):
        files = []
        receiver = DirectReceiver('b', on_file=files.append)
        await receiver.handle_message('a', meta('f1', 1, 3))
        await receiver.handle_message('a', chunk('f1', 0, b'abc', 1))
        assert files == []

        await receiver.handle_message('a', file_hash('f1', compute_digest(b'abc')))
        assert files[0].data == b'abc'

    @pytest.mark.asyncio
    async def test_mismatch_delivered_by_default(self):
        end_a, end_b, _, receiver, files, verdicts = connected()
        await receiver.handle_message('a', meta('f1', 1, 3))
        await receiver.handle_message('a', chunk('f1', 0, b'abc', 1))
        await receiver.handle_message('a', file_hash('f1', 'not-the-digest'))

        assert files[0].integrity == 'mismatch'
        assert verdicts == ['mismatch']

    @pytest.mark.asyncio
    async def test_mismatch_rejected_when_strict(self):
        end_a, end_b, sender, receiver, files, verdicts = connected(reject_on_mismatch=True)
        await receiver.handle_message('a', meta('f1', 1, 3))
        await receiver.handle_message('a', chunk('f1', 0, b'abc', 1))
        await receiver.handle_message('a', file_hash('f1', 'not-the-digest'))
        await end_a.drain()

        assert files == []
        assert verdicts == ['mismatch']
        assert sender.verdicts['f1'] == MESSAGE_HASH_MISMATCH

    @pytest.mark.asyncio
    async def test_duplicate_and_stray_chunks(self):
        files = []
        receiver = DirectReceiver('b', on_file=files.append)
        await receiver.handle_message('z', chunk('unknown', 0, b'x', 1))
        assert receiver.in_progress == 0

        await receiver.handle_message('a', meta('f1', 2, 4))
        await receiver.handle_message('a', chunk('f1', 0, b'ab', 2))
        await receiver.handle_message('a', chunk('f1', 0, b'zz', 2))
        await receiver.handle_message('a', chunk('f1', 7, b'zz', 2))
        await receiver.handle_message('a', chunk('f1', 1, b'cd', 2))
        await receiver.handle_message('a', file_hash('f1', compute_digest(b'abcd')))

        assert files[0].data == b'abcd'

    @pytest.mark.asyncio
    async def test_same_file_id_from_two_peers(self):
        files = []
        receiver = DirectReceiver('c', on_file=files.append)
        for peer_id, payload in (('a', b'from-a'), ('b', b'from-b')):
            await receiver.handle_message(peer_id, meta('f1', 1, len(payload)))
        for peer_id, payload in (('a', b'from-a'), ('b', b'from-b')):
            await receiver.handle_message(peer_id, chunk('f1', 0, payload, 1))
            await receiver.handle_message(peer_id, file_hash('f1', compute_digest(payload)))

        assert sorted((f.peer_id, f.data) for f in files) == [('a', b'from-a'), ('b', b'from-b')]

    @pytest.mark.asyncio
    async def test_ignores_other_messages(self):
        receiver = DirectReceiver('b')
        handled = await receiver.handle_message('a', ChannelMessage(DataType.RELAY_FILE_INFO, file_id='f1'))
        assert handled is False
