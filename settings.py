"""
Application configuration, loaded once at startup from the environment.
A .env file in the working directory is read first if present.
"""

import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
# Transactions need a replica set; turn off for a standalone mongod.
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "1") == "1"

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "90"))
MAIL_LINK_EXPIRES_MINUTES = int(os.getenv("MAIL_LINK_EXPIRES_MINUTES", "2880"))

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME", "coffeeshop")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.example.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_SENDER = os.getenv("SMTP_SENDER", "noreply@coffeeshop.example")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))


def setup_logging(level: str = LOG_LEVEL) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())
