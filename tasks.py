"""
Background job dispatch (enqueue side).

Jobs are tagged with a task type and carry a JSON payload. They are pushed
onto rq queues and executed by the worker process (see worker.py), which
routes each one to the handler registered for its type.
"""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from pydantic import BaseModel, TypeAdapter
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

import settings

logger = logging.getLogger(__name__)

SEND_VERIFICATION_EMAIL = "task:send_verification_email"
SEND_PASSWORD_RESET_EMAIL = "task:send_password_reset_email"
UPLOAD_S3_OBJECT = "task:upload_s3_object"
UPLOAD_MULTIPLE_S3_OBJECTS = "task:upload_multiple_s3_objects"
DELETE_S3_OBJECT = "task:delete_s3_object"

CRITICAL_QUEUE = "critical"
DEFAULT_QUEUE = "default"
QUEUES = [CRITICAL_QUEUE, DEFAULT_QUEUE]

# Seconds between attempts; the last value repeats once the list runs out.
RETRY_BACKOFF = [10, 30, 60, 300]

JOB_RUNNER = "worker.process_task"


class EnqueueError(Exception):
    pass


class PayloadSendMail(BaseModel):
    email: str


class PayloadUploadImage(BaseModel):
    object_key: str
    extension: str
    image: str  # base64

    @classmethod
    def from_bytes(cls, object_key: str, extension: str, data: bytes) -> "PayloadUploadImage":
        return cls(object_key=object_key, extension=extension, image=base64.b64encode(data).decode("ascii"))

    def data(self) -> bytes:
        return base64.b64decode(self.image)


UploadBatch = TypeAdapter(List[PayloadUploadImage])


@dataclass
class TaskOptions:
    max_retry: int = 3
    process_in: timedelta = timedelta(0)
    queue: str = DEFAULT_QUEUE


class TaskDistributor:
    def __init__(self, connection: Redis, queue_class=Queue):
        self.connection = connection
        self.queue_class = queue_class

    @classmethod
    def from_settings(cls) -> "TaskDistributor":
        return cls(Redis.from_url(settings.REDIS_URL))

    def enqueue(self, task_type: str, payload: str, opts: Optional[TaskOptions] = None):
        """Submit a job of `task_type`; raises EnqueueError if the broker is unreachable."""
        opts = opts or TaskOptions()
        queue = self.queue_class(opts.queue, connection=self.connection)
        kwargs = dict(
            retry=Retry(max=opts.max_retry, interval=RETRY_BACKOFF) if opts.max_retry > 0 else None,
            description=task_type,
            meta={"task_type": task_type},
        )
        try:
            if opts.process_in > timedelta(0):
                job = queue.enqueue_in(opts.process_in, JOB_RUNNER, task_type, payload, **kwargs)
            else:
                job = queue.enqueue(JOB_RUNNER, task_type, payload, **kwargs)
        except RedisError as e:
            logger.error("enqueueing %s on %s failed: %s", task_type, opts.queue, e)
            raise EnqueueError(f"enqueueing task error {e}") from e

        logger.info("enqueued task %s as job %s on %s, max retries %d, delay %s",
                    task_type, job.id, opts.queue, opts.max_retry, opts.process_in)
        return job

    def send_verification_mail(self, payload: PayloadSendMail, opts: Optional[TaskOptions] = None):
        return self.enqueue(SEND_VERIFICATION_EMAIL, payload.model_dump_json(), opts)

    def send_password_reset_mail(self, payload: PayloadSendMail, opts: Optional[TaskOptions] = None):
        return self.enqueue(SEND_PASSWORD_RESET_EMAIL, payload.model_dump_json(), opts)

    def upload_s3_object(self, payload: PayloadUploadImage, opts: Optional[TaskOptions] = None):
        return self.enqueue(UPLOAD_S3_OBJECT, payload.model_dump_json(), opts)

    def upload_multiple_s3_objects(self, payload: Sequence[PayloadUploadImage], opts: Optional[TaskOptions] = None):
        return self.enqueue(UPLOAD_MULTIPLE_S3_OBJECTS, UploadBatch.dump_json(list(payload)).decode(), opts)

    def delete_s3_objects(self, object_keys: Sequence[str], opts: Optional[TaskOptions] = None):
        return self.enqueue(DELETE_S3_OBJECT, json.dumps(list(object_keys)), opts)
