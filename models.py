from sqlalchemy import JSON, Column, DateTime, Enum, Float, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()

MEDIA_TYPES = ("image", "video")

JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PENDING, JOB_IN_PROGRESS, JOB_COMPLETED, JOB_FAILED)


class Media(Base):
    __tablename__ = 'media'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    type = Column(Enum(*MEDIA_TYPES, name="media_type"), nullable=False, index=True)
    url = Column(Text, nullable=False)
    source_url = Column(Text, nullable=False, index=True)
    alt_text = Column(Text)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Media(id={self.id}, type='{self.type}', url='{self.url[:60]}')>"


class ScrapeJob(Base):
    __tablename__ = 'scrape_jobs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    url = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=JOB_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_type = Column(String(20), nullable=False, default="exponential")
    backoff_delay = Column(Float, nullable=False, default=1.0)
    next_attempt_at = Column(DateTime, nullable=False, default=func.now())
    claimed_at = Column(DateTime)
    finished_at = Column(DateTime)
    last_error = Column(Text)
    result = Column(JSON)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    # Claim query scans by status and due time
    __table_args__ = (
        Index('ix_scrape_jobs_status_next_attempt', 'status', 'next_attempt_at'),
    )

    def __repr__(self):
        return (
            f"<ScrapeJob(id={self.id}, status='{self.status}', attempts={self.attempts}, "
            f"url='{self.url}')>"
        )
