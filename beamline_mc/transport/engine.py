"""
Run driver: distributes event indices over workers and collects the results.

Two backends:
    threads    one Pipeline shared by all threads; histograms take per-cell locks
    processes  one Pipeline per worker process, built from the instrument
               description in the pool initializer; accumulators are merged
               in the parent at the end

Every event draws from its own (seed, event index) random stream, so results
do not depend on the backend, the worker count or the scheduling.
"""

import logging
import multiprocessing as mp
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

from beamline_mc.core.constants import SPECIES
from beamline_mc.core.errors import ConfigurationError, LifecycleError, RunAbortedError
from beamline_mc.core.event import Event
from beamline_mc.core.rng import RandomStreams
from beamline_mc.transport.pipeline import Pipeline

logger = logging.getLogger(__name__)

BACKENDS = ('threads', 'processes')


@dataclass
class RunSummary:
    """Outcome of RunDriver.run()."""

    n_requested: int
    n_processed: int
    elapsed: float
    seed: int
    species: str
    backend: str
    n_workers: int
    statistics: Dict[str, dict] = field(default_factory=dict)
    multiplicity: Dict[int, int] = field(default_factory=dict)

    @property
    def rate(self) -> float:
        return self.n_processed / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def stopped_early(self) -> bool:
        return self.n_processed < self.n_requested


def _run_events(pipeline: Pipeline, streams: RandomStreams, species: str,
                start: int, stop: int, deadline: Optional[float] = None,
                stop_event: Optional[threading.Event] = None) -> int:
    """Trace events [start, stop); returns how many were fully processed.

    Cancellation is checked between events only.
    """
    processed = 0
    for index in range(start, stop):
        if stop_event is not None and stop_event.is_set():
            break
        if deadline is not None and time.time() >= deadline:
            break
        event = Event(index=index, species=species)
        pipeline.trace_event(event, streams.stream(index))
        processed += 1
    return processed


# Pipeline instance for each worker process
_worker_pipeline = None
# (instance, message) when the worker pipeline could not be built
_worker_error = None


def _init_worker(description: dict):
    """Build and initialize this worker's own pipeline.

    Failures are kept in ``_worker_error`` and returned by every chunk.
    """
    global _worker_pipeline, _worker_error
    try:
        pipeline = Pipeline.from_description(description)
        pipeline.initialize()
        pipeline.start()
    except (ConfigurationError, RunAbortedError) as e:
        reason = e.__cause__ if isinstance(e, RunAbortedError) and e.__cause__ else e
        _worker_error = (e.instance or description.get('name', 'instrument'), str(reason))
        return
    _worker_pipeline = pipeline


def _run_chunk_worker(work_item: dict) -> dict:
    """
    Worker function for the process backend.

    Returns this chunk's accumulators and counters, then zeroes the worker
    pipeline so the next chunk is not counted twice.
    """
    global _worker_pipeline

    if _worker_error is not None:
        return {'error': _worker_error}

    streams = RandomStreams(work_item['seed'])
    processed = _run_events(_worker_pipeline, streams, work_item['species'],
                            work_item['start'], work_item['stop'], work_item['deadline'])
    result = {
        'processed': processed,
        'accumulators': _worker_pipeline.export_accumulators(),
        'statistics': _worker_pipeline.statistics(),
        'multiplicity': dict(_worker_pipeline.multiplicity),
    }
    _worker_pipeline.reset()
    return result


class RunDriver:
    """
    Runs a pipeline over N events.

    Example:
        driver = RunDriver(pipeline, species='xray', seed=1234, n_workers=4)
        summary = driver.run(100_000)
        driver.finish('results/')
    """

    def __init__(self, pipeline: Pipeline, species: str = 'xray', seed: Optional[int] = None,
                 n_workers: Optional[int] = None, backend: str = 'threads',
                 chunk_size: Optional[int] = None, verbose: bool = True):
        """
        Parameters:
            pipeline: Instrument to run
            species: 'xray' or 'neutron'
            seed: Run seed (None = fresh seed from OS entropy, recorded in the summary)
            n_workers: Worker threads/processes (default: cpu_count)
            backend: 'threads' or 'processes'
            chunk_size: Events per work item (default: spread over ~4 chunks per worker)
            verbose: Print a run summary
        """
        if species not in SPECIES:
            raise ValueError(f"Unknown species '{species}'. Available: {list(SPECIES)}")
        if backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{backend}'. Available: {list(BACKENDS)}")
        if n_workers is None:
            n_workers = os.cpu_count() or 1
        if n_workers < 1:
            raise ValueError(f"Need at least one worker, got {n_workers}")
        if chunk_size is not None and chunk_size < 1:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")

        self.pipeline = pipeline
        self.species = species
        self.streams = RandomStreams(seed)
        self.n_workers = n_workers
        self.backend = backend
        self.chunk_size = chunk_size
        self.verbose = verbose

        self.n_processed = 0
        # First event index of the next run(); repeated runs continue the sequence
        self.next_index = 0
        self._finished = False

    @property
    def seed(self) -> int:
        return self.streams.run_seed

    def _chunks(self, n_events: int) -> List[tuple]:
        size = self.chunk_size or max(1, -(-n_events // (4 * self.n_workers)))
        first, end = self.next_index, self.next_index + n_events
        return [(start, min(start + size, end)) for start in range(first, end, size)]

    def run(self, n_events: int, time_budget: Optional[float] = None,
            stop_event: Optional[threading.Event] = None, progress: bool = True) -> RunSummary:
        """
        Trace ``n_events`` events.

        Parameters:
            n_events: Number of events requested
            time_budget: Stop after this many seconds (events in flight finish)
            stop_event: External cancellation flag
            progress: Show a tqdm progress bar

        Returns:
            RunSummary (only fully processed events are counted)

        Raises:
            RunAbortedError: a component failed to initialize
        """
        if self._finished:
            raise LifecycleError("RunDriver.run() called after finish()")
        if n_events < 0:
            raise ValueError(f"Number of events must be non-negative, got {n_events}")

        if not self.pipeline.initialized:
            self.pipeline.initialize()
        self.pipeline.start()

        if self.verbose:
            print(f"\nRunning {n_events:,} {self.species} events through '{self.pipeline.name}'")
            print(f"  Components: {len(self.pipeline)}")
            print(f"  Backend: {self.backend} x {self.n_workers}")
            print(f"  Seed: {self.seed}")

        deadline = time.time() + time_budget if time_budget is not None else None
        chunks = self._chunks(n_events)
        start_time = time.time()

        with tqdm(total=n_events, unit='ev', disable=not progress, leave=False) as bar:
            if self.backend == 'threads':
                processed = self._run_threads(chunks, deadline, stop_event, bar)
            else:
                processed = self._run_processes(chunks, deadline, stop_event, bar)

        elapsed = time.time() - start_time
        self.n_processed += processed
        # Indices of chunks cut short by an early stop are skipped, never replayed
        self.next_index += n_events

        summary = RunSummary(
            n_requested=n_events,
            n_processed=processed,
            elapsed=elapsed,
            seed=self.seed,
            species=self.species,
            backend=self.backend,
            n_workers=self.n_workers,
            statistics=self.pipeline.statistics(),
            multiplicity=dict(sorted(self.pipeline.multiplicity.items())),
        )
        if summary.stopped_early:
            logger.warning("Run stopped early: %d of %d events processed", processed, n_events)

        if self.verbose:
            print(f"\nRun complete:")
            print(f"  Time: {elapsed:.1f}s")
            print(f"  Rate: {summary.rate:.0f} events/sec")
            print(f"  Events: {processed:,} / {n_events:,}")
            for name, stats in summary.statistics.items():
                print(f"  {name:<16s} in={stats['entered']:<9d} scat={stats['scattered']:<9d} "
                      f"abs={stats['absorbed']:<9d} rest={stats['restored']:<9d}")
        return summary

    def _run_threads(self, chunks, deadline, stop_event, bar) -> int:
        processed = 0
        if self.n_workers == 1:
            for start, stop in chunks:
                done = _run_events(self.pipeline, self.streams, self.species,
                                   start, stop, deadline, stop_event)
                processed += done
                bar.update(done)
            return processed

        with ThreadPoolExecutor(max_workers=self.n_workers) as pool:
            futures = [pool.submit(_run_events, self.pipeline, self.streams, self.species,
                                   start, stop, deadline, stop_event)
                       for start, stop in chunks]
            for future in as_completed(futures):
                done = future.result()
                processed += done
                bar.update(done)
        return processed

    def _run_processes(self, chunks, deadline, stop_event, bar) -> int:
        description = self.pipeline.describe()
        try:
            # Nodes the workers cannot rebuild (e.g. unregistered types) fail here
            Pipeline.from_description(description)
        except ConfigurationError as e:
            raise RunAbortedError(e.instance or self.pipeline.name, str(e)) from e

        work_items = [{'seed': self.seed, 'species': self.species,
                       'start': start, 'stop': stop, 'deadline': deadline}
                      for start, stop in chunks]

        processed = 0
        with mp.Pool(self.n_workers, initializer=_init_worker,
                     initargs=(description,)) as pool:
            for result in pool.imap_unordered(_run_chunk_worker, work_items):
                if 'error' in result:
                    instance, reason = result['error']
                    raise RunAbortedError(instance, reason)
                # Chunks still in flight after a stop are discarded whole
                if stop_event is not None and stop_event.is_set():
                    break
                self.pipeline.merge_accumulators(result['accumulators'])
                self.pipeline.merge_statistics(result['statistics'], result['multiplicity'])
                processed += result['processed']
                bar.update(result['processed'])
        return processed

    def finish(self, output_dir) -> List[Path]:
        """Save every node's histograms, then tear the pipeline down (once)."""
        if self._finished:
            raise LifecycleError("RunDriver.finish() called twice")
        self._finished = True
        output_dir = Path(output_dir)
        paths = self.pipeline.save(output_dir, n_events=self.n_processed)
        self.pipeline.teardown()
        if self.verbose:
            print(f"\nSaved {len(paths)} file(s) to {output_dir}")
        return paths
