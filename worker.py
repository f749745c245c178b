"""
Background job worker (execution side).

Run with `python worker.py`. Pulls jobs from the critical queue first, then
the default queue, and routes each one to the handler registered for its
task type. A handler that raises makes rq retry the job with backoff until
its retry budget is spent, after which it lands in the failed registry.
Retried jobs may run twice; nothing here deduplicates them.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from redis import Redis
from rq import Queue, Worker

import database
import settings
from auth import RESET_PASSWORD, VERIFY_ACCOUNT, create_link_token
from mail import SMTPTransport
from storage import Bucket
from tasks import (
    DELETE_S3_OBJECT,
    QUEUES,
    SEND_PASSWORD_RESET_EMAIL,
    SEND_VERIFICATION_EMAIL,
    UPLOAD_MULTIPLE_S3_OBJECTS,
    UPLOAD_S3_OBJECT,
    PayloadSendMail,
    PayloadUploadImage,
    UploadBatch,
)

logger = logging.getLogger(__name__)


class UnknownTaskError(Exception):
    pass


class TaskProcessor:
    def __init__(self, db: Database, mailer: SMTPTransport, bucket: Bucket):
        self.db = db
        self.mailer = mailer
        self.bucket = bucket
        self.handlers: Dict[str, Callable[[str], None]] = {
            SEND_VERIFICATION_EMAIL: self.process_send_verification_mail,
            SEND_PASSWORD_RESET_EMAIL: self.process_send_password_reset_mail,
            UPLOAD_S3_OBJECT: self.process_upload_s3_object,
            UPLOAD_MULTIPLE_S3_OBJECTS: self.process_upload_multiple_s3_objects,
            DELETE_S3_OBJECT: self.process_delete_s3_object,
        }

    def process(self, task_type: str, payload: str) -> None:
        handler = self.handlers.get(task_type)
        if handler is None:
            raise UnknownTaskError(f"no handler registered for {task_type}")
        logger.info("processing %s", task_type)
        handler(payload)
        logger.info("processed %s", task_type)

    def _user_by_email(self, payload: str) -> Dict[str, Any]:
        mail = PayloadSendMail.model_validate_json(payload)
        user = self.db["user"].find_one({"email": mail.email})
        if not user:
            raise LookupError(f"user not found: {mail.email}")
        return user

    def process_send_verification_mail(self, payload: str) -> None:
        user = self._user_by_email(payload)
        token = create_link_token(str(user["_id"]), VERIFY_ACCOUNT)
        link = f"{settings.CLIENT_URL}/verify?token={token}"
        self.mailer.send(user["email"], "Verify your account",
                         f"Hi {user['username']},\n\nConfirm your email address by opening:\n{link}\n")

    def process_send_password_reset_mail(self, payload: str) -> None:
        user = self._user_by_email(payload)
        token = create_link_token(str(user["_id"]), RESET_PASSWORD)
        link = f"{settings.CLIENT_URL}/resetpassword?token={token}"
        self.mailer.send(user["email"], "Reset your password",
                         f"Hi {user['username']},\n\nReset your password by opening:\n{link}\n\n"
                         "If you did not ask for this, ignore this email.\n")

    def process_upload_s3_object(self, payload: str) -> None:
        image = PayloadUploadImage.model_validate_json(payload)
        self.bucket.upload_image(image.object_key, image.extension, image.data())

    def process_upload_multiple_s3_objects(self, payload: str) -> None:
        images: List[PayloadUploadImage] = UploadBatch.validate_json(payload)
        self.bucket.upload_multiple_images((i.object_key, i.extension, i.data()) for i in images)

    def process_delete_s3_object(self, payload: str) -> None:
        for object_key in json.loads(payload):
            self.bucket.delete_image(object_key)


_processor: Optional[TaskProcessor] = None


def get_processor() -> TaskProcessor:
    global _processor
    if _processor is None:
        if database.db is None:
            raise RuntimeError("Database not configured, set DATABASE_URL and DATABASE_NAME")
        _processor = TaskProcessor(database.db, SMTPTransport.from_settings(), Bucket.from_settings())
    return _processor


def process_task(task_type: str, payload: str) -> None:
    """Entry point rq calls for every job."""
    get_processor().process(task_type, payload)


def log_failure(job, exc_type, exc_value, traceback) -> bool:
    task_type = (job.meta or {}).get("task_type", job.description)
    logger.error("job %s (%s) failed: %s; retries left: %s", job.id, task_type, exc_value, job.retries_left)
    return True


def main() -> None:
    settings.setup_logging()
    connection = Redis.from_url(settings.REDIS_URL)
    queues = [Queue(name, connection=connection) for name in QUEUES]
    worker = Worker(queues, connection=connection, exception_handlers=[log_failure])
    logger.info("worker listening on %s", ", ".join(QUEUES))
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
