from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from domaincrawl.models.base import Base, TimestampMixin

ROOT_ORIGIN = "<ROOT>"


class Link(Base, TimestampMixin):
    __tablename__ = "links"
    __table_args__ = (
        UniqueConstraint("crawler_id", "path", name="uq_links_crawler_path"),
        Index("ix_links_claim", "crawler_id", "status", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    path: Mapped[str] = mapped_column(Text)
    # fresh/processing/processed/failed/skipped
    status: Mapped[str] = mapped_column(String(10), default="fresh", server_default="fresh")
    level: Mapped[int] = mapped_column(Integer, default=0)
    origin: Mapped[str] = mapped_column(Text, default=ROOT_ORIGIN)
    crawler_id: Mapped[int] = mapped_column(ForeignKey("crawlers.id", ondelete="CASCADE"), index=True)

    crawler = relationship("CrawlJob", back_populates="links")

    def __repr__(self) -> str:
        return f"<Link id={self.id} level={self.level} status={self.status} path={self.path}>"
