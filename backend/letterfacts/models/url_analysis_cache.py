"""
Durable (L2) tier of the URL analysis cache.

One row per normalized source URL. Rows are looked up by the SHA-256 hex of the
normalized URL and are only valid while `expires_at` is in the future.
"""
from sqlalchemy import Column, String, Text, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB

from ..core.db import Base


class UrlAnalysisCache(Base):
    __tablename__ = "url_analysis_cache"

    url_hash = Column(String(64), primary_key=True)    # sha256 hex of normalized url
    url = Column(Text, nullable=False)                 # normalized url, for debugging
    data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
