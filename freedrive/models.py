import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String

from freedrive.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    # mirror of the auth provider's user; id is the provider's subject
    __tablename__ = "users"
    id = Column(String(36), primary_key=True)
    email = Column(String, unique=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class Repository(Base):
    __tablename__ = "repos"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False, unique=True)
    provider_repo_id = Column(String, nullable=False, unique=True)
    sequence_number = Column(Integer, nullable=False)
    size_mb = Column(Float, nullable=False, default=0.0)
    max_size_mb = Column(Float, nullable=False, default=800.0)
    is_active = Column(Boolean, nullable=False, default=True)
    # bumped on every size write, used for conditional updates
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class File(Base):
    __tablename__ = "files"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    repo_id = Column(String(36), ForeignKey("repos.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String, nullable=False, unique=True)
    original_name = Column(String, nullable=False, index=True)
    size_mb = Column(Float, nullable=False)
    mime_type = Column(String)
    download_url = Column(String, nullable=False)
    gh_release_id = Column(String, nullable=False)
    gh_asset_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
