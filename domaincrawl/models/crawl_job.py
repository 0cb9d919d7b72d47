from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from domaincrawl.models.base import Base, TimestampMixin


class CrawlJob(Base, TimestampMixin):
    __tablename__ = "crawlers"

    id: Mapped[int] = mapped_column(primary_key=True)
    root_path: Mapped[str] = mapped_column(Text, unique=True)
    status: Mapped[str] = mapped_column(String(10), default="idle", server_default="idle")  # idle/processing

    links = relationship("Link", back_populates="crawler", cascade="all, delete-orphan", passive_deletes=True)
