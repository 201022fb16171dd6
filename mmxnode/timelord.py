"""A verifiable delay function runner that answers interval requests with proofs of time."""

from __future__ import annotations

import logging
import threading
import time
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .types import Hash

logger = logging.getLogger(__name__)

_U64 = (1 << 64) - 1
_CHAINS = 2

Outputs = Tuple[Hash, Hash]


@dataclass(frozen=True)
class TimeInfusion:
    """Values to mix into one chain at given iteration counts."""

    chain: int = 0
    values: Mapping[int, Hash] = field(default_factory=dict)


@dataclass(frozen=True)
class IntervalRequest:
    """Asks for a proof covering the iterations from ``begin`` to ``end``."""

    begin: int = 0
    end: int = 0
    num_segments: int = 1
    height: int = 0
    has_start: bool = False
    start_values: Outputs = (Hash(), Hash())


@dataclass(frozen=True)
class TimeSegment:
    num_iters: int = 0
    output: Outputs = (Hash(), Hash())


@dataclass
class ProofOfTime:
    start: int = 0
    height: int = 0
    infuse: Tuple[Dict[int, Hash], Dict[int, Hash]] = field(default_factory=lambda: ({}, {}))
    segments: List[TimeSegment] = field(default_factory=list)


@dataclass(frozen=True)
class _VdfPoint:
    num_iters: int
    output: Outputs


def compute_vdf(value, num_iters):
    """Apply SHA-256 to ``value`` ``num_iters`` times."""
    result = Hash(value)
    for _ in range(num_iters):
        result = Hash.digest(bytes(result))
    return result


def _now_micros() -> int:
    return time.monotonic_ns() // 1000


class TimeLord:
    """Runs two hash chains in a background thread and publishes proofs of time.

    ``publish`` is called with each finished :class:`ProofOfTime`; it may be
    called from the VDF thread.
    """

    def __init__(self, publish: Callable[[ProofOfTime], None], max_history=1000,
                 restart_holdoff=10000):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._publish = publish
        self._max_history = max_history
        self._restart_holdoff = restart_holdoff
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None

        self.checkpoint_iters = 1000
        self._do_restart = False
        self._running = False
        self._notify = False
        self._last_restart = 0
        self._avg_iters_per_sec = 0

        self._infuse: Tuple[Dict[int, Hash], Dict[int, Hash]] = ({}, {})
        self._infuse_history: Tuple[Dict[int, Hash], Dict[int, Hash]] = ({}, {})
        self._history: Dict[int, Outputs] = {}
        self._pending: Dict[Tuple[int, int], int] = {}  # (end, begin) -> height
        self._latest: Optional[_VdfPoint] = None
        self._point: Optional[_VdfPoint] = None

    @property
    def iters_per_second(self):
        """Running estimate of the iteration speed."""
        return self._avg_iters_per_sec

    def handle_infusion(self, infusion):
        """Replace the infusion points of a chain from the first given one onward."""
        if infusion.chain > 1:
            return
        with self._lock:
            points = self._infuse[infusion.chain]
            values = dict(sorted(infusion.values.items()))
            for iters, value in values.items():
                if iters not in points:
                    if self._latest is not None and iters < self._latest.num_iters:
                        logger.warning("Missed infusion point at %d iterations", iters)
                    logger.debug("Infusing at %d on chain %d: %s", iters, infusion.chain, value)
            if values:
                first = next(iter(values))
                for key in [key for key in points if key >= first]:
                    del points[key]
            for iters, value in values.items():
                points.setdefault(iters, Hash(value))

    def handle_request(self, request):
        """Record an interval to prove, starting or redirecting the VDF if asked."""
        if request.num_segments < 1:
            raise ValueError("num_segments must be at least 1")
        with self._lock:
            self.checkpoint_iters = ((request.end - request.begin) & _U64) // request.num_segments

            if request.has_start:
                begin = _VdfPoint(request.begin, tuple(request.start_values))
                if not self._running:
                    self.start_vdf(begin.num_iters, begin.output)
                else:
                    known = self._history.get(request.begin)
                    latest = self._latest
                    if ((known is not None and known != begin.output)
                            or (known is None and latest is not None
                                and latest.num_iters > request.begin)):
                        self._do_restart = True
                        self._history.clear()
                        for infused in self._infuse_history:
                            infused.clear()
                        self._latest = begin
                        logger.warning("Our VDF forked from the network, restarting ...")
                    elif latest is None or begin.num_iters > latest.num_iters:
                        # another timelord is faster
                        now = _now_micros()
                        if (now - self._last_restart) // 1000 > self._restart_holdoff:
                            self._last_restart = now
                            self._latest = begin

            if request.end > request.begin:
                self._pending.setdefault((request.end, request.begin), request.height)
            self.update()

    def update(self):
        """Publish proofs for every pending interval the history now covers."""
        with self._lock:
            for key in sorted(self._pending):
                iters_end, iters_begin = key
                checkpoints = sorted(self._history)
                end_idx = bisect_left(checkpoints, iters_end)
                if end_idx == len(checkpoints):
                    break
                begin_idx = bisect_right(checkpoints, iters_begin)
                if begin_idx < len(checkpoints) and begin_idx != end_idx:
                    self._publish(self._make_proof(
                        iters_begin, iters_end, self._pending[key], checkpoints, begin_idx, end_idx))
                del self._pending[key]

    def _make_proof(self, iters_begin, iters_end, height, checkpoints, begin_idx, end_idx):
        proof = ProofOfTime(start=iters_begin, height=height)
        for k in range(_CHAINS):
            proof.infuse[k].update(
                (iters, value) for iters, value in sorted(self._infuse_history[k].items())
                if iters_begin <= iters < iters_end)

        prev_iters = iters_begin
        for iters in checkpoints[begin_idx:end_idx]:
            proof.segments.append(TimeSegment(iters - prev_iters, self._history[iters]))
            prev_iters = iters

        end_iters = checkpoints[end_idx]
        if end_iters == iters_end:
            proof.segments.append(TimeSegment(end_iters - prev_iters, self._history[end_iters]))
        else:
            # recompute the end point from the previous checkpoint
            prev = checkpoints[end_idx - 1]
            num_iters = iters_end - prev
            output = tuple(compute_vdf(value, num_iters) for value in self._history[prev])
            proof.segments.append(TimeSegment(num_iters, output))
        return proof

    def start_vdf(self, num_iters, outputs):
        """Start the VDF thread at the given point unless it is already running."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._last_restart = _now_micros()
            self._point = _VdfPoint(num_iters, tuple(Hash(value) for value in outputs))
            logger.info("Started VDF at %d", num_iters)
            self._thread = threading.Thread(target=self._run, name="vdf", daemon=True)
            self._thread.start()

    def stop_vdf(self):
        """Stop the VDF thread and wait for it to finish."""
        with self._lock:
            self._running = False
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self):
        while self.step():
            pass

    def step(self):
        """Advance the chains to the next target; return False when not running."""
        started = time.perf_counter()
        with self._lock:
            if not self._running or self._point is None:
                return False
            point = self._point
            latest = self._latest
            if latest is not None and (self._do_restart or latest.num_iters > point.num_iters):
                self._do_restart = False
                point = latest
                logger.info("Restarted VDF at %d", point.num_iters)
            else:
                self._latest = point

            current = point.num_iters
            outputs = list(point.output)
            self._history.setdefault(current, point.output)
            while len(self._history) > self._max_history:
                del self._history[min(self._history)]

            next_target = 0
            for k in range(_CHAINS):
                if len(self._history) >= self._max_history:
                    first = min(self._history)
                    infused = self._infuse_history[k]
                    for key in [key for key in infused if key < first]:
                        del infused[key]
                value = self._infuse[k].get(current)
                if value is not None:
                    outputs[k] = Hash.digest(outputs[k] + value)
                    self._infuse_history[k].setdefault(current, value)
                upcoming = [key for key in self._infuse[k] if key > current]
                if upcoming:
                    target = min(upcoming)
                    if not next_target or target < next_target:
                        next_target = target

            pending = sorted(self._pending)
            idx = bisect_right(pending, (current, current))
            if idx < len(pending):
                iters_end = pending[idx][0]
                if not next_target or iters_end < next_target:
                    next_target = iters_end
            if idx != 0:
                self._notify = True
            if self._notify:
                self.update()
            checkpoint_iters = self.checkpoint_iters
        self._notify = False

        checkpoint = current + checkpoint_iters
        if next_target <= current:
            next_target = checkpoint
        elif next_target <= checkpoint:
            self._notify = True
        else:
            next_target = checkpoint
        num_iters = next_target - current

        result = tuple(compute_vdf(value, num_iters) for value in outputs)
        self._point = _VdfPoint(current + num_iters, result)

        elapsed = time.perf_counter() - started
        if elapsed > 0 and num_iters > checkpoint_iters // 2:
            speed = int(num_iters / elapsed)
            self._avg_iters_per_sec = (self._avg_iters_per_sec * 255 + speed) // 256
        return True