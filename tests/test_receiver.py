#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Wire packet and receiver tests: JSON form, checksums, duplicate
suppression and rejection of malformed input.
"""

import dataclasses
import json
import unittest
import zlib

import xxhash

from network_optimizer import (
    Compressor,
    IntegrityError,
    ManualScheduler,
    MAX_COMPRESSED_SIZE,
    OptimizerConfig,
    PacketReceiver,
    ReliableSender,
    ValidationError,
    WirePacket,
    compute_checksum,
)


PAYLOAD = b'{"x": 1.25, "y": -7.5, "state": "moving"}' * 10


def make_packets(config=None, count=1):
    sent = []
    sender = ReliableSender(sent.append, ManualScheduler(), config=config)
    for _ in range(count):
        sender.send(PAYLOAD)
    return sent


class TestChecksums(unittest.TestCase):

    def test_length(self):
        self.assertEqual(compute_checksum(b"hello"), 5)
        self.assertEqual(compute_checksum(b"hello", "length"), 5)

    def test_crc32(self):
        self.assertEqual(compute_checksum(b"hello", "crc32"), zlib.crc32(b"hello"))

    def test_xxh64(self):
        self.assertEqual(compute_checksum(b"hello", "xxh64"), xxhash.xxh64_intdigest(b"hello"))

    def test_unknown(self):
        with self.assertRaises(ValueError):
            compute_checksum(b"hello", "md5")


class TestWirePacket(unittest.TestCase):

    def setUp(self):
        self.packet = make_packets()[0]

    def test_dict_form_uses_camel_case(self):
        data = self.packet.to_dict()
        self.assertIn("originalSize", data)
        self.assertIn("checksumType", data)
        self.assertIsInstance(data["data"], str)

    def test_json_round_trip(self):
        self.assertEqual(WirePacket.from_json(self.packet.to_json()), self.packet)
        self.assertEqual(WirePacket.from_dict(self.packet.to_dict()), self.packet)

    def test_encoded_size(self):
        self.assertEqual(self.packet.encoded_size, len(self.packet.to_json()))

    def test_missing_field(self):
        data = self.packet.to_dict()
        del data["checksum"]
        with self.assertRaises(ValidationError):
            WirePacket.from_dict(data)

    def test_wrong_types(self):
        for name, value in (("attempt", True), ("attempt", 1.5), ("compressed", 1),
                            ("id", 7), ("timestamp", "now"), ("originalSize", None)):
            with self.subTest(field=name, value=value):
                data = dict(self.packet.to_dict(), **{name: value})
                with self.assertRaises(ValidationError):
                    WirePacket.from_dict(data)

    def test_attempt_must_be_positive(self):
        data = dict(self.packet.to_dict(), attempt=0)
        with self.assertRaises(ValidationError):
            WirePacket.from_dict(data)

    def test_bad_base64(self):
        data = dict(self.packet.to_dict(), data="not*base64!")
        with self.assertRaises(ValidationError):
            WirePacket.from_dict(data)

    def test_oversized_data_rejected_before_decoding(self):
        data = dict(self.packet.to_dict(), data="A" * (MAX_COMPRESSED_SIZE * 4 // 3 + 8))
        with self.assertRaises(IntegrityError):
            WirePacket.from_dict(data)

    def test_not_json(self):
        with self.assertRaises(ValidationError):
            WirePacket.from_json("{oops")
        with self.assertRaises(ValidationError):
            WirePacket.from_json("[1, 2]")

    def test_deeply_nested_json(self):
        with self.assertRaises(ValidationError) as ctx:
            WirePacket.from_json("[" * 100000 + "]" * 100000)
        self.assertIn("nested too deeply", str(ctx.exception))

    def test_timestamp_out_of_float_range(self):
        data = dict(self.packet.to_dict(), timestamp=int("9" * 400))
        with self.assertRaises(ValidationError):
            WirePacket.from_dict(data)

    def test_timestamp_must_be_finite(self):
        for value in (float("inf"), float("-inf"), float("nan")):
            with self.subTest(timestamp=value):
                data = dict(self.packet.to_dict(), timestamp=value)
                with self.assertRaises(ValidationError):
                    WirePacket.from_dict(data)

    def test_verify_checksum(self):
        self.packet.verify_checksum()
        broken = dataclasses.replace(self.packet, checksum=self.packet.checksum + 1)
        with self.assertRaises(IntegrityError):
            broken.verify_checksum()
        unknown = dataclasses.replace(self.packet, checksum_type="md5")
        with self.assertRaises(ValidationError):
            unknown.verify_checksum()


class TestPacketReceiver(unittest.TestCase):

    def setUp(self):
        self.acks = []
        self.receiver = PacketReceiver(Compressor(), send_ack=self.acks.append)

    def test_accepts_compressed_packet(self):
        packet = make_packets()[0]
        self.assertTrue(packet.compressed)
        result = self.receiver.receive(packet)
        self.assertTrue(result.ok)
        self.assertEqual(result.payload, PAYLOAD)
        self.assertEqual(result.packet_id, packet.id)
        self.assertEqual(self.acks, [packet.id])
        self.assertEqual(self.receiver.accepted, 1)

    def test_accepts_json_and_dict(self):
        first, second = make_packets(count=2)
        self.assertEqual(self.receiver.receive(first.to_json()).payload, PAYLOAD)
        self.assertEqual(self.receiver.receive(second.to_dict()).payload, PAYLOAD)

    def test_library_codec_and_checksum(self):
        config = OptimizerConfig(algorithm="zstd", checksum_type="crc32")
        packet = make_packets(config)[0]
        self.assertEqual(packet.algorithm, "zstd")
        result = self.receiver.receive(packet.to_json())
        self.assertTrue(result.ok)
        self.assertEqual(result.payload, PAYLOAD)

    def test_duplicate_is_acked_but_withheld(self):
        packet = make_packets()[0]
        self.receiver.receive(packet)
        retry = dataclasses.replace(packet, attempt=2)
        result = self.receiver.receive(retry)
        self.assertTrue(result.ok)
        self.assertTrue(result.duplicate)
        self.assertIsNone(result.payload)
        self.assertEqual(self.acks, [packet.id, packet.id])
        self.assertEqual(self.receiver.duplicates, 1)
        self.assertEqual(self.receiver.accepted, 1)

    def test_dedupe_window_is_bounded(self):
        receiver = PacketReceiver(dedupe_capacity=1)
        first, second = make_packets(count=2)
        receiver.receive(first)
        receiver.receive(second)
        self.assertFalse(receiver.receive(first).duplicate)
        self.assertEqual(receiver.accepted, 3)

    def test_checksum_mismatch(self):
        packet = make_packets()[0]
        broken = dataclasses.replace(packet, checksum=packet.checksum + 1)
        result = self.receiver.receive(broken)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, IntegrityError)
        self.assertEqual(result.packet_id, packet.id)
        self.assertEqual(self.acks, [])
        self.assertEqual(self.receiver.rejected, 1)

    def test_size_mismatch(self):
        packet = make_packets()[0]
        result = self.receiver.receive(dataclasses.replace(packet, original_size=packet.original_size + 1))
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, IntegrityError)

    def test_corrupt_token_stream(self):
        data = b"abc\xff"
        packet = WirePacket(
            id="bad", data=data, compressed=True, timestamp=0.0, attempt=1,
            checksum=compute_checksum(data), original_size=3,
        )
        result = self.receiver.receive(packet)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, IntegrityError)
        self.assertEqual(self.acks, [])

    def test_unknown_algorithm(self):
        packet = dataclasses.replace(make_packets()[0], algorithm="brotli")
        result = self.receiver.receive(packet)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, ValidationError)

    def test_malformed_input(self):
        for raw in ("{oops", json.dumps({"id": "x"}), b"\x00\x01"):
            with self.subTest(raw=raw):
                result = self.receiver.receive(raw)
                self.assertFalse(result.ok)
                self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(self.receiver.rejected, 3)

    def test_hostile_json_is_rejected_not_raised(self):
        huge_timestamp = (
            '{"id":"x","data":"","compressed":false,"timestamp":' + "9" * 400
            + ',"attempt":1,"checksum":0,"originalSize":0}'
        )
        nested = "[" * 100000 + "]" * 100000
        for raw in (huge_timestamp, nested, huge_timestamp.replace("9" * 400, "Infinity")):
            with self.subTest(raw=raw[:60]):
                result = self.receiver.receive(raw)
                self.assertFalse(result.ok)
                self.assertIsInstance(result.error, ValidationError)
        self.assertEqual(self.acks, [])

    def test_rejected_packet_not_remembered(self):
        packet = make_packets()[0]
        self.receiver.receive(dataclasses.replace(packet, checksum=packet.checksum + 1))
        result = self.receiver.receive(packet)
        self.assertTrue(result.ok)
        self.assertFalse(result.duplicate)

    def test_ack_failure_does_not_reject(self):
        def broken_ack(packet_id):
            raise ConnectionError("ack channel down")

        receiver = PacketReceiver(send_ack=broken_ack)
        result = receiver.receive(make_packets()[0])
        self.assertTrue(result.ok)

    def test_dedupe_capacity_minimum(self):
        with self.assertRaises(ValidationError):
            PacketReceiver(dedupe_capacity=0)


if __name__ == '__main__':
    unittest.main()
