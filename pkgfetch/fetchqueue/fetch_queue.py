from __future__ import annotations
from abc import ABC
from dataclasses import dataclass, field
import asyncio
import os
import time
from pkgfetch.pkg import Pkg
from pkgfetch.fetch import (PkgFetchError, DomainClientProducer, DEFAULT_PART_WORKERS, fetch_pkg_content, load_keyset)

import logging
logger = logging.getLogger(__name__)

#==============================================================
# Documentation
#==============================================================
# The fetch pool bounds and schedules the fetching of Pkg content.
# Producers interact with the pool only through two bounded buffers: one for fetch tasks, one for cancelations.
# If a buffer is full, enqueueing fails right away (backpressure), it never blocks.
#
# A single scheduler loop owns all tasks. Per iteration it:
# 1. drains the cancelation buffer and drops canceled tasks that have not started yet, wherever they
#    wait (in the fetch buffer or deferred behind a running task with the same path)
# 2. dequeues tasks while a worker slot is free
# 3. runs each task: the HTTP clients are produced right before each source is fetched, so that
#    credentials and timeouts reflect the current configuration
# 4. appends a Try to the task's history for every attempt
#
# Cancelation only works before a task started; in-flight fetches are not interrupted.
# A cancelation applies to the tasks with its path that were enqueued before it was submitted.
# When the pool stops, tasks that never started are completed as canceled ("pool stopped").

#==============================================================
# Type defs and constants
#==============================================================
MAX_FETCHES_BUFFER = 100
MAX_CANCELATIONS_BUFFER = 100
DEFAULT_WORKERS = 2
DEFAULT_MAX_TRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_CANCELATION_EXPIRY_SECONDS = 5 * 60

class FetchQueueFullError(Exception):
    pass

class FetchPoolClosedError(Exception):
    pass

@dataclass(slots=True)
class Try:
    """Historical record of a fetch attempt, either successful or failed."""
    fetch_started_at:float
    fetch_success:bool = False
    fetch_msg:str = ""
    fetch_err:Exception|None = None
    fetch_ended_at:float|None = None

@dataclass(slots=True)
class Cancelation:
    """Cancels an enqueued Task with the same destination path."""
    destination_path:str
    canceled_by:str #loose description of the cancel request agent
    submitted_at:float = field(default_factory=time.time)
    canceled_on:float|None = None #set when the cancelation was applied to a task

    def is_expired(self, now:float, expiry_seconds:float) -> bool:
        return now - self.submitted_at > expiry_seconds

#==============================================================
# Util Classes
#==============================================================
class _EventWithCompletion(ABC):
    def __init__(self) -> None:
        self._completion_event = asyncio.Event()

    async def wait_for_completion(self, timeout_seconds:float=90):
        """Wait for the completion to be set. If not set within the timeout, a asyncio.TimeoutError is raised."""
        await asyncio.wait_for(self._completion_event.wait(), timeout_seconds)

    def set_completion(self):
        self._completion_event.set()

    @property
    def completed(self) -> bool:
        return self._completion_event.is_set()

class Task(_EventWithCompletion):
    """A job to fetch the content of a Pkg. Identified by its destination path, relative to the pool's destination directory."""

    destination_path:str
    pkg:Pkg
    try_history:list[Try]
    cancelation:Cancelation|None
    result:dict[str, str]|None
    enqueued_at:float|None

    def __init__(self, pkg:Pkg, destination_path:str|None=None) -> None:
        super().__init__()
        self.pkg = pkg
        self.destination_path = os.path.normpath(destination_path or pkg.id)
        self.try_history = []
        self.cancelation = None
        self.result = None
        self.enqueued_at = None

    @property
    def canceled(self) -> bool:
        return self.cancelation is not None

    @property
    def succeeded(self) -> bool:
        return len(self.try_history) > 0 and self.try_history[-1].fetch_success

    def __repr__(self) -> str:
        return f"Task({self.destination_path}, pkg={self.pkg.id}, tries={len(self.try_history)}, canceled={self.canceled})"

#==============================================================
# Fetch Pool Class
# Implemented as a single, asynchronous scheduler loop
# all interactions with the loop are through the buffers
#==============================================================
class FetchPool:

    def __init__(
            self,
            destination_dir:str,
            client_producer:DomainClientProducer,
            keys_dirs:list[str],
            workers:int=DEFAULT_WORKERS,
            part_workers:int=DEFAULT_PART_WORKERS,
            fetch_buffer:int=MAX_FETCHES_BUFFER,
            cancelation_buffer:int=MAX_CANCELATIONS_BUFFER,
            cancelation_expiry_seconds:float=DEFAULT_CANCELATION_EXPIRY_SECONDS,
            max_tries:int=DEFAULT_MAX_TRIES,
            retry_delay_seconds:float=DEFAULT_RETRY_DELAY_SECONDS,
            ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if max_tries < 1:
            raise ValueError("max_tries must be at least 1")

        # the destination directory cannot be changed during execution
        self.destination_dir = os.path.abspath(destination_dir)
        self.client_producer = client_producer
        self.keys_dirs = list(keys_dirs)
        self.workers = workers
        self.part_workers = part_workers
        self.cancelation_expiry_seconds = cancelation_expiry_seconds
        self.max_tries = max_tries
        self.retry_delay_seconds = retry_delay_seconds

        # bounded, async buffers
        self._fetch_buffer:asyncio.Queue[Task] = asyncio.Queue(maxsize=fetch_buffer)
        self._cancelation_buffer:asyncio.Queue[Cancelation] = asyncio.Queue(maxsize=cancelation_buffer)

        # owned by the scheduler loop
        self._tasks:list[Task] = []
        self._deferred:list[Task] = []
        self._waiting:dict[str, list[Task]] = {} #not yet started tasks (buffered or deferred), by destination path
        self._running:dict[str, asyncio.Task] = {}

        self._closed = False
        self._cancel_event = asyncio.Event()
        self._running_event = asyncio.Event()
        self._wakeup_event = asyncio.Event()

    #==============================================================
    # Producer API
    #==============================================================
    def enqueue_fetch(self, task:Task):
        """Enqueues a task for fetching. Raises a FetchQueueFullError if the fetch buffer is full."""
        if self._closed:
            raise FetchPoolClosedError("Fetch pool is stopped, not accepting new tasks.")
        self.task_dir(task)
        task.enqueued_at = time.time()
        try:
            self._fetch_buffer.put_nowait(task)
        except asyncio.QueueFull as e:
            raise FetchQueueFullError(f"Fetch buffer is full ({self._fetch_buffer.maxsize} pending tasks), cannot enqueue {task}.") from e
        self._waiting.setdefault(task.destination_path, []).append(task)
        logger.debug(f"Enqueued {task}")
        self._wakeup_event.set()

    def cancel_fetch(self, cancelation:Cancelation):
        """Enqueues a cancelation. It drops every task with the same destination path that was enqueued
        before the cancelation was submitted and has not started yet."""
        if self._closed:
            raise FetchPoolClosedError("Fetch pool is stopped, not accepting cancelations.")
        cancelation.destination_path = os.path.normpath(cancelation.destination_path)
        try:
            self._cancelation_buffer.put_nowait(cancelation)
        except asyncio.QueueFull as e:
            raise FetchQueueFullError(f"Cancelation buffer is full ({self._cancelation_buffer.maxsize} pending cancelations).") from e
        logger.debug(f"Enqueued cancelation for {cancelation.destination_path} by {cancelation.canceled_by}")
        self._wakeup_event.set()

    def task_dir(self, task:Task) -> str:
        """The absolute directory a task fetches into. It must be inside the pool's destination directory."""
        task_dir = os.path.abspath(os.path.join(self.destination_dir, task.destination_path))
        if task_dir == self.destination_dir or os.path.commonpath([task_dir, self.destination_dir]) != self.destination_dir:
            raise ValueError(f"Task destination path {task.destination_path} is not inside the destination directory {self.destination_dir}")
        return task_dir

    @property
    def tasks(self) -> list[Task]:
        """All tasks the scheduler has dequeued so far, in order. This is the history, tasks are never removed."""
        return list(self._tasks)

    #==============================================================
    # Main Loop
    #==============================================================
    async def wait_until_running(self):
        await self._running_event.wait()

    def stop(self):
        self._closed = True
        self._cancel_event.set()
        self._wakeup_event.set()

    async def start(self):
        logger.info(f"Starting fetch pool with {self.workers} worker(s), destination: {self.destination_dir}")
        await asyncio.sleep(0) #yield to allow other tasks to run
        self._running_event.set()
        try:
            while not self._cancel_event.is_set():
                await self._wakeup_event.wait()
                self._wakeup_event.clear()
                if self._cancel_event.is_set():
                    break
                self._schedule()
        finally:
            self._closed = True
            running = list(self._running.values())
            for running_task in running:
                running_task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            self._drop_waiting_tasks()
            logger.info("Stopped fetch pool.")

    def _drop_waiting_tasks(self):
        # tasks that never started are completed as canceled, so nobody waits on them forever
        while not self._fetch_buffer.empty():
            task = self._fetch_buffer.get_nowait()
            self._tasks.append(task)
        self._deferred.clear()
        for path, tasks in list(self._waiting.items()):
            for task in list(tasks):
                self._cancel_task(task, Cancelation(path, "pool stopped"))
        self._waiting.clear()

    def _schedule(self):
        self._drain_cancelations()

        # deferred tasks wait for an earlier task with the same destination path to finish
        for task in list(self._deferred):
            if len(self._running) >= self.workers:
                return
            if task.canceled:
                self._deferred.remove(task)
            elif task.destination_path not in self._running:
                self._deferred.remove(task)
                self._start(task)

        while len(self._running) < self.workers and not self._fetch_buffer.empty():
            if len(self._deferred) >= self._fetch_buffer.maxsize:
                break
            task = self._fetch_buffer.get_nowait()
            self._tasks.append(task)
            if task.canceled:
                continue
            if task.destination_path in self._running:
                self._deferred.append(task)
                continue
            self._start(task)

    def _drain_cancelations(self):
        now = time.time()
        while not self._cancelation_buffer.empty():
            cancelation = self._cancelation_buffer.get_nowait()
            if cancelation.is_expired(now, self.cancelation_expiry_seconds):
                logger.warning(f"Dropping stale cancelation for {cancelation.destination_path} submitted at {cancelation.submitted_at}")
                continue
            # a cancelation only applies to tasks that were enqueued before it was submitted,
            # a later task that reuses the path is not affected
            matching = [t for t in self._waiting.get(cancelation.destination_path, []) if t.enqueued_at <= cancelation.submitted_at]
            if len(matching) == 0:
                if cancelation.destination_path in self._running:
                    logger.warning(f"Cannot cancel the fetch of {cancelation.destination_path} that is already in progress")
                else:
                    logger.debug(f"No pending task for cancelation of {cancelation.destination_path}, ignoring it")
                continue
            for task in matching:
                self._cancel_task(task, cancelation)

    def _cancel_task(self, task:Task, cancelation:Cancelation):
        self._unwait(task)
        if task.completed:
            return
        cancelation.canceled_on = time.time()
        task.cancelation = cancelation
        task.set_completion()
        logger.info(f"Canceled {task} (canceled by {cancelation.canceled_by}), dropping it")

    def _unwait(self, task:Task):
        tasks = self._waiting.get(task.destination_path, [])
        if task in tasks:
            tasks.remove(task)
        if len(tasks) == 0:
            self._waiting.pop(task.destination_path, None)

    def _start(self, task:Task):
        self._unwait(task)
        self._running[task.destination_path] = asyncio.create_task(
            self._run_task(task),
            name=f"fetch-task-{task.destination_path}")

    async def _run_task(self, task:Task):
        task_dir = self.task_dir(task)
        try:
            for attempt in range(1, self.max_tries + 1):
                fetch_try = Try(fetch_started_at=time.time())
                task.try_history.append(fetch_try)
                try:
                    keyset = await load_keyset(self.keys_dirs)
                    task.result = await fetch_pkg_content(self.client_producer, task.pkg, task_dir, keyset, self.part_workers)
                    fetch_try.fetch_success = True
                    fetch_try.fetch_msg = f"Fetched {len(task.result)} part(s) on attempt {attempt}"
                    logger.info(f"{task}: {fetch_try.fetch_msg}")
                    break
                except PkgFetchError as e:
                    fetch_try.fetch_err = e
                    fetch_try.fetch_msg = f"Attempt {attempt} of {self.max_tries} failed: {e}"
                    logger.error(f"{task}: {fetch_try.fetch_msg}")
                except Exception as e:
                    fetch_try.fetch_err = e
                    fetch_try.fetch_msg = f"Attempt {attempt} failed with unexpected error: {e}"
                    logger.exception(f"{task}: {fetch_try.fetch_msg}")
                    break
                finally:
                    fetch_try.fetch_ended_at = time.time()

                if attempt < self.max_tries:
                    await asyncio.sleep(self.retry_delay_seconds)
        finally:
            del self._running[task.destination_path]
            task.set_completion()
            self._wakeup_event.set()


def new_pool(destination_dir:str, client_producer:DomainClientProducer, keys_dirs:list[str], **kwargs) -> FetchPool:
    """Configures a fetch pool. The client producer is expected to produce a client that can authenticate with the given domain."""
    os.makedirs(destination_dir, mode=0o700, exist_ok=True)
    return FetchPool(destination_dir, client_producer, keys_dirs, **kwargs)
