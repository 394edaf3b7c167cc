#!/usr/bin/env python3
"""
Benchmark: native LZ77 vs library codecs
========================================

Compares ratio and speed of every codec on replication-shaped payloads,
and measures how much delta encoding saves on a stream of entity states.
"""

import json
import random
import time

from network_optimizer import (
    Colors,
    CompressionRegistry,
    CompressionType,
    DeltaCodec,
    format_size,
)

colors = Colors


def make_payload(kind: str, size: int, seed: int = 123) -> bytes:
    """Build a reproducible payload.

    Supported kinds:
        - entities: JSON entity records with drifting coordinates
        - text: repeated log-like lines
        - random: incompressible bytes
    """
    rnd = random.Random(seed)
    out = bytearray()
    if kind == 'entities':
        i = 0
        while len(out) < size:
            record = {
                'id': f'entity-{i % 32}',
                'x': round(rnd.uniform(-100, 100), 2),
                'y': round(rnd.uniform(-100, 100), 2),
                'state': rnd.choice(['idle', 'moving', 'attacking']),
            }
            out += json.dumps(record, sort_keys=True).encode('utf-8')
            i += 1
    elif kind == 'text':
        while len(out) < size:
            out += f"[{rnd.randint(0, 9999):04d}] tick ok, peers=4 queue=0\n".encode('utf-8')
    elif kind == 'random':
        out += bytes(rnd.randint(0, 255) for _ in range(size))
    else:
        raise ValueError(f"Unknown payload kind: {kind}")
    return bytes(out[:size])


def benchmark_codec(data: bytes, comp_type: CompressionType) -> dict:
    """Compress and decompress once, verifying the round trip"""
    t1 = time.perf_counter()
    output = CompressionRegistry.compress(data, comp_type)
    t2 = time.perf_counter()
    restored = CompressionRegistry.decompress(output, comp_type)
    t3 = time.perf_counter()
    return {
        'size': len(output),
        'ratio': len(output) / len(data) if data else 1.0,
        'compress_time': t2 - t1,
        'decompress_time': t3 - t2,
        'verified': restored == data,
    }


def benchmark_delta(frames: int = 200, seed: int = 7) -> dict:
    """Encode a moving entity frame by frame, full vs delta"""
    rnd = random.Random(seed)
    codec = DeltaCodec()
    state = {
        'x': 0.0, 'y': 0.0, 'hp': 100, 'name': 'ship-7', 'team': 'blue',
        'inventory': ['sword', 'shield', 'potion'],
    }
    previous = None
    full_bytes = delta_bytes = deltas = 0
    for _ in range(frames):
        current = dict(state, x=round(state['x'] + rnd.uniform(0, 1), 2))
        if rnd.random() < 0.1:
            current['hp'] = max(0, state['hp'] - rnd.randint(1, 10))
        encoded = codec.encode(current, previous)
        full_bytes += len(codec.encode(current))
        delta_bytes += len(encoded)
        deltas += encoded.is_delta
        if codec.decode(encoded, previous) != current:
            raise AssertionError("delta round trip failed")
        previous = state = current
    return {
        'frames': frames,
        'deltas': deltas,
        'full_bytes': full_bytes,
        'delta_bytes': delta_bytes,
    }


def run_benchmark_suite() -> None:
    print(colors.bold("=" * 80))
    print(colors.bold("🚀 CODEC BENCHMARK".center(80)))
    print(colors.bold("=" * 80))

    for kind in ('entities', 'text', 'random'):
        for size in (4 * 1024, 64 * 1024):
            data = make_payload(kind, size)
            print(f"\n{colors.bold(f'{kind} ({format_size(size)})')}")
            for comp_type in (CompressionType.LZ77, CompressionType.ZLIB,
                              CompressionType.LZ4, CompressionType.ZSTD):
                r = benchmark_codec(data, comp_type)
                mark = colors.success('✓') if r['verified'] else colors.error('✗')
                print(
                    f"  {comp_type.value:<6} {format_size(r['size']):>12} {r['ratio']:>7.1%}"
                    f"  compress {r['compress_time'] * 1000:8.2f}ms"
                    f"  decompress {r['decompress_time'] * 1000:8.2f}ms  {mark}"
                )

    d = benchmark_delta()
    print(f"\n{colors.bold('delta encoding')}")
    print(f"  Frames:       {d['frames']} ({d['deltas']} sent as delta)")
    print(f"  Full states:  {format_size(d['full_bytes'])}")
    print(f"  With deltas:  {format_size(d['delta_bytes'])} ({d['delta_bytes'] / d['full_bytes']:.1%})")

    print(f"\n{colors.bold('=' * 80)}")
    print(colors.success("✓ Benchmark complete!"))
    print(colors.bold("=" * 80))


if __name__ == '__main__':
    run_benchmark_suite()
