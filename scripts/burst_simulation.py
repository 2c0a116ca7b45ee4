#!/usr/bin/env python3
"""Replay a request burst against an in-process fleet and report the outcome.

Uses the fake engine and the simulated provisioner, so it runs anywhere. The
engine sleeps for the simulated inference time times --time-scale.

Usage:
    uv run scripts/burst_simulation.py --requests 1000 --deadline 30
    uv run scripts/burst_simulation.py --requests 300 --interrupt-after 5
"""

import argparse
import asyncio
import sys

import numpy as np

from stt_fleet.config import Settings
from stt_fleet.engine.fake import FakeEngine
from stt_fleet.errors import AdmissionRejected, RequestExpired, RequestFailed
from stt_fleet.logging_config import setup_root_logging
from stt_fleet.metrics import InMemoryMetricsSink
from stt_fleet.provisioning import SimulatedProvisioner
from stt_fleet.service import DispatchService


async def wait_one(service: DispatchService, request_id: str) -> str:
    try:
        await service.result(request_id)
        return "completed"
    except RequestExpired:
        return "expired"
    except RequestFailed:
        return "failed"


async def interrupt_spot(provisioner: SimulatedProvisioner, delay: float) -> None:
    """Preempt every spot instance once, after the given delay."""
    await asyncio.sleep(delay)
    for worker_id in provisioner.running("spot-gpu"):
        print(f"Interrupting {worker_id}")
        provisioner.interrupt(worker_id, grace_seconds=30)


async def main() -> None:
    ap = argparse.ArgumentParser(description="Burst simulation for the STT fleet")
    ap.add_argument("--requests", type=int, default=1000, help="Requests in the burst")
    ap.add_argument("--deadline", type=float, default=30.0, help="Deadline per request (s)")
    ap.add_argument("--min-audio", type=float, default=2.0, help="Shortest clip (s)")
    ap.add_argument("--max-audio", type=float, default=30.0, help="Longest clip (s)")
    ap.add_argument(
        "--time-scale",
        type=float,
        default=0.1,
        help="Multiplier on simulated inference time",
    )
    ap.add_argument(
        "--startup-seconds",
        type=float,
        default=2.0,
        help="Simulated instance startup time",
    )
    ap.add_argument(
        "--interrupt-after",
        type=float,
        default=None,
        help="Preempt spot instances this many seconds into the run",
    )
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args()

    if args.min_audio <= 0 or args.max_audio < args.min_audio:
        print("Error: need 0 < --min-audio <= --max-audio")
        sys.exit(1)

    setup_root_logging(args.log_level)
    settings = Settings(QUEUE_CAPACITY=max(args.requests, 1), CONTROL_INTERVAL_SECONDS=0.5)
    descriptors = settings.worker_classes()
    provisioner = SimulatedProvisioner(
        descriptors,
        startup_seconds=args.startup_seconds,
        grace_seconds=settings.PREEMPTION_GRACE_SECONDS,
    )
    sink = InMemoryMetricsSink()
    service = DispatchService(
        settings,
        engine=FakeEngine(descriptors, time_scale=args.time_scale, seed=args.seed),
        provisioner=provisioner,
        metrics_sink=sink,
        descriptors=descriptors,
    )

    rng = np.random.default_rng(args.seed)
    durations = rng.uniform(args.min_audio, args.max_audio, size=args.requests)

    await service.start()
    try:
        if args.interrupt_after is not None:
            asyncio.create_task(interrupt_spot(provisioner, args.interrupt_after))

        ids = []
        rejected = 0
        for duration in durations:
            try:
                ids.append(service.submit(float(duration), args.deadline))
            except AdmissionRejected:
                rejected += 1

        print(f"Submitted {len(ids)} requests ({rejected} rejected)...")
        outcomes = await asyncio.gather(*(wait_one(service, i) for i in ids))
    finally:
        await service.stop()

    print()
    for status in ("completed", "expired", "failed"):
        print(f"{status:>10}: {outcomes.count(status)}")

    snapshot = service.snapshot()
    print(f"\nCost to date: ${snapshot.cost_to_date:.4f}")
    print(f"Peak queue depth: {max((s.queue_depth for s in sink.snapshots), default=0)}")
    for name, metrics in snapshot.classes.items():
        peak = max((s.classes[name].desired for s in sink.snapshots), default=0)
        line = f"{name:>10}: peak desired={peak}"
        if metrics.latency_p50 is not None:
            line += (
                f"  p50={metrics.latency_p50:.2f}s"
                f"  p95={metrics.latency_p95:.2f}s"
                f"  p99={metrics.latency_p99:.2f}s"
            )
        print(line)

    if outcomes.count("failed"):
        sys.exit(2)


if __name__ == "__main__":
    asyncio.run(main())
