"""Background sync jobs tracked in Redis and executed by Celery."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib import import_module
from typing import Any, Callable, Mapping, Optional

from celery import Celery, states
from celery.app.task import Task
from redis import Redis
from redis.exceptions import RedisError

from config import (
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    CELERY_TASK_ALWAYS_EAGER,
    JOB_REDIS_URL,
)

logger = logging.getLogger(__name__)


MAX_BACKGROUND_JOBS = 50

SYNC_JOB_RUNNER = 'app:_execute_sync_job'


def _job_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def sync_job_type(user_id: str, platform: str) -> str:
    """Return the job type that allows one active sync per user and platform."""

    return f'sync:{user_id}:{platform}'


celery_app = Celery('library_sync')


def _configure_celery(app: Celery) -> None:
    app.conf.update(
        broker_url=CELERY_BROKER_URL,
        result_backend=CELERY_RESULT_BACKEND,
        task_track_started=True,
        task_serializer='json',
        accept_content=['json'],
        result_serializer='json',
        task_always_eager=CELERY_TASK_ALWAYS_EAGER,
        task_eager_propagates=CELERY_TASK_ALWAYS_EAGER,
    )


_configure_celery(celery_app)


JOB_STATUS_PENDING = 'pending'
JOB_STATUS_RUNNING = 'running'
JOB_STATUS_SUCCESS = 'success'
JOB_STATUS_ERROR = 'error'
JOB_ACTIVE_STATUSES = {JOB_STATUS_PENDING, JOB_STATUS_RUNNING}
JOB_TERMINAL_STATUSES = {JOB_STATUS_SUCCESS, JOB_STATUS_ERROR}


@dataclass
class BackgroundJob:
    id: str
    job_type: str
    status: str = JOB_STATUS_PENDING
    message: str = ''
    progress_percent: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: str = ''
    updated_at: str = ''
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    task_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'jobType': self.job_type,
            'status': self.status,
            'message': self.message,
            'progressPercent': self.progress_percent,
            'data': dict(self.data),
            'result': dict(self.result),
            'error': self.error,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'startedAt': self.started_at,
            'finishedAt': self.finished_at,
            'taskId': self.task_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'BackgroundJob':
        data = dict(payload)
        return cls(
            id=str(data.get('id', '')),
            job_type=str(data.get('jobType', '')),
            status=str(data.get('status', JOB_STATUS_PENDING)),
            message=str(data.get('message', '')),
            progress_percent=int(data.get('progressPercent', 0) or 0),
            data=dict(data.get('data') or {}),
            result=dict(data.get('result') or {}),
            error=data.get('error'),
            created_at=str(data.get('createdAt', '')),
            updated_at=str(data.get('updatedAt', '')),
            started_at=data.get('startedAt'),
            finished_at=data.get('finishedAt'),
            task_id=data.get('taskId'),
        )


class BackgroundJobManager:
    _JOB_INDEX_KEY = 'sync_jobs:index'

    def __init__(self, redis_client: Redis | None = None) -> None:
        self._redis = redis_client or Redis.from_url(JOB_REDIS_URL, decode_responses=True)
        self._celery = celery_app

    def _job_key(self, job_id: str) -> str:
        return f'sync_jobs:data:{job_id}'

    def _serialize(self, job: BackgroundJob) -> str:
        return json.dumps(job.to_dict(), default=_json_default)

    def _deserialize(self, raw: str | None) -> Optional[BackgroundJob]:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.error('Unable to decode job payload: %s', raw)
            return None
        return BackgroundJob.from_dict(payload)

    def _store_job(self, job: BackgroundJob) -> None:
        payload = self._serialize(job)
        try:
            with self._redis.pipeline() as pipe:
                pipe.set(self._job_key(job.id), payload)
                pipe.zadd(self._JOB_INDEX_KEY, {job.id: time.time()})
                pipe.execute()
        except RedisError as exc:  # pragma: no cover - surfaced to caller
            logger.error('Failed to persist job %s: %s', job.id, exc)
            raise

    def _load_job(self, job_id: str) -> Optional[BackgroundJob]:
        try:
            raw = self._redis.get(self._job_key(job_id))
        except RedisError as exc:  # pragma: no cover - treated as missing
            logger.error('Failed to load job %s: %s', job_id, exc)
            return None
        return self._deserialize(raw)

    def _save_job(self, job: BackgroundJob) -> None:
        try:
            self._redis.set(self._job_key(job.id), self._serialize(job))
        except RedisError as exc:  # pragma: no cover - surfaced to caller
            logger.error('Failed to save job %s: %s', job.id, exc)
            raise

    def _iter_jobs(self) -> list[BackgroundJob]:
        try:
            job_ids = self._redis.zrange(self._JOB_INDEX_KEY, 0, -1)
        except RedisError as exc:  # pragma: no cover - treated as empty
            logger.error('Failed to query job index: %s', exc)
            return []
        jobs = []
        for job_id in job_ids:
            job = self._load_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    def _find_active_job(self, job_type: str) -> Optional[BackgroundJob]:
        for job in self._iter_jobs():
            if job.job_type == job_type and job.status in JOB_ACTIVE_STATUSES:
                return job
        return None

    def _prune_jobs(self) -> None:
        try:
            total = self._redis.zcard(self._JOB_INDEX_KEY)
        except RedisError as exc:  # pragma: no cover - pruning is best effort
            logger.error('Failed to read job index size: %s', exc)
            return
        if total <= MAX_BACKGROUND_JOBS:
            return
        removable = [job for job in self._iter_jobs() if job.status in JOB_TERMINAL_STATUSES]
        removable.sort(key=lambda job: job.finished_at or job.updated_at)
        for job in removable:
            if total <= MAX_BACKGROUND_JOBS:
                break
            try:
                removed = self._redis.zrem(self._JOB_INDEX_KEY, job.id)
            except RedisError as exc:  # pragma: no cover - pruning is best effort
                logger.error('Failed to prune job %s: %s', job.id, exc)
                continue
            if removed:
                self._redis.delete(self._job_key(job.id))
                total -= 1

    def list_jobs(self, job_type_prefix: str | None = None) -> list[dict[str, Any]]:
        jobs = [
            job
            for job in self._iter_jobs()
            if not job_type_prefix or job.job_type.startswith(job_type_prefix)
        ]
        jobs.sort(key=lambda job: job.created_at)
        return [job.to_dict() for job in jobs]

    def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        job = self._load_job(job_id)
        return job.to_dict() if job else None

    def get_active_job(self, job_type: str) -> Optional[dict[str, Any]]:
        job = self._find_active_job(job_type)
        return job.to_dict() if job else None

    def enqueue_job(
        self,
        job_type: str,
        runner_path: str,
        *,
        description: str | None = None,
        kwargs: Optional[Mapping[str, Any]] = None,
    ) -> tuple[dict[str, Any], bool]:
        """Queue ``runner_path`` unless a job of ``job_type`` is still active.

        Returns the job payload and whether a new job was created.
        """

        existing = self._find_active_job(job_type)
        if existing is not None:
            return existing.to_dict(), False
        job_id = uuid.uuid4().hex
        timestamp = _job_timestamp()
        job = BackgroundJob(
            id=job_id,
            job_type=job_type,
            message=description or '',
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._store_job(job)
        self._prune_jobs()
        signature = run_background_job.s(
            job_id=job_id,
            job_type=job_type,
            runner_path=runner_path,
            runner_kwargs=dict(kwargs or {}),
        )
        async_result = signature.apply_async(task_id=job_id)
        job.task_id = async_result.id
        job.updated_at = _job_timestamp()
        self._save_job(job)
        logger.info('Queued background job %s (%s)', job_id, job_type)
        return job.to_dict(), True

    def enqueue_sync(self, user_id: str, platform: str) -> tuple[dict[str, Any], bool]:
        return self.enqueue_job(
            sync_job_type(user_id, platform),
            SYNC_JOB_RUNNER,
            description=f'Queued {platform} sync',
            kwargs={'user_id': user_id, 'platform': platform},
        )

    def _set_job_running(self, job_id: str, *, task_id: str | None = None) -> None:
        timestamp = _job_timestamp()
        job = self._load_job(job_id)
        if job is None:
            return
        job.status = JOB_STATUS_RUNNING
        job.started_at = timestamp
        job.updated_at = timestamp
        if task_id:
            job.task_id = task_id
        if not job.message:
            job.message = 'Running…'
        self._save_job(job)

    def _update_job(
        self,
        job_id: str,
        *,
        progress_percent: int | None = None,
        message: str | None = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        job = self._load_job(job_id)
        if job is None:
            return
        if progress_percent is not None:
            try:
                job.progress_percent = min(max(int(progress_percent), 0), 100)
            except (TypeError, ValueError):
                job.progress_percent = 0
        if message is not None:
            job.message = str(message)
        if data:
            job.data.update(data)
        job.updated_at = _job_timestamp()
        self._save_job(job)

    def _finalize_job(
        self,
        job_id: str,
        status: str,
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        job = self._load_job(job_id)
        if job is None:
            return
        job.status = status
        job.error = error
        job.result = dict(result or {})
        if status == JOB_STATUS_SUCCESS:
            job.progress_percent = 100
        timestamp = _job_timestamp()
        job.finished_at = timestamp
        job.updated_at = timestamp
        self._save_job(job)


def _resolve_runner(runner_path: str) -> Callable[..., Any]:
    if ':' in runner_path:
        module_path, attr = runner_path.split(':', 1)
    else:
        module_path, attr = runner_path.rsplit('.', 1)
    module = import_module(module_path)
    runner = getattr(module, attr)
    if not callable(runner):
        raise RuntimeError(f'Runner {runner_path} is not callable')
    return runner


@celery_app.task(name='jobs.run_background_job', bind=True)
def run_background_job(
    self: Task,
    *,
    job_id: str,
    job_type: str,
    runner_path: str,
    runner_kwargs: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    manager = get_job_manager()
    manager._set_job_running(job_id, task_id=getattr(self.request, 'id', None))

    def progress_callback(
        percent: int | None = None,
        message: str | None = None,
        *,
        data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        manager._update_job(
            job_id,
            progress_percent=percent,
            message=message,
            data=data,
        )
        job_data = manager.get_job(job_id)
        if job_data is not None:
            self.update_state(state='PROGRESS', meta=job_data)

    try:
        runner = _resolve_runner(runner_path)
        result = runner(progress_callback, **(runner_kwargs or {}))
    except Exception as exc:
        logger.exception('Background job %s (%s) failed', job_id, job_type)
        manager._finalize_job(job_id, JOB_STATUS_ERROR, error=str(exc))
        self.update_state(state=states.FAILURE, meta={'exc_message': str(exc)})
        raise

    normalized_result: dict[str, Any]
    if isinstance(result, Mapping):
        normalized_result = dict(result)
    elif result is None:
        normalized_result = {}
    else:
        normalized_result = {'result': result}
    manager._finalize_job(job_id, JOB_STATUS_SUCCESS, result=normalized_result)
    final_job = manager.get_job(job_id) or {}
    self.update_state(state=states.SUCCESS, meta=final_job)
    return final_job


_JOB_MANAGER: BackgroundJobManager | None = None


def get_job_manager() -> BackgroundJobManager:
    """Return the process-wide :class:`BackgroundJobManager` instance."""

    global _JOB_MANAGER
    if _JOB_MANAGER is None:
        _JOB_MANAGER = BackgroundJobManager()
    return _JOB_MANAGER


def set_job_manager(manager: BackgroundJobManager | None) -> None:
    """Replace the process-wide manager, e.g. with one bound to another Redis."""

    global _JOB_MANAGER
    _JOB_MANAGER = manager


__all__ = [
    'BackgroundJob',
    'BackgroundJobManager',
    'JOB_ACTIVE_STATUSES',
    'JOB_STATUS_ERROR',
    'JOB_STATUS_PENDING',
    'JOB_STATUS_RUNNING',
    'JOB_STATUS_SUCCESS',
    'JOB_TERMINAL_STATUSES',
    'MAX_BACKGROUND_JOBS',
    'SYNC_JOB_RUNNER',
    'celery_app',
    'get_job_manager',
    'run_background_job',
    'set_job_manager',
    'sync_job_type',
]
