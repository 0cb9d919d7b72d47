from domaincrawl.models.base import Base
from domaincrawl.models.crawl_job import CrawlJob
from domaincrawl.models.link import ROOT_ORIGIN, Link

__all__ = ["Base", "CrawlJob", "Link", "ROOT_ORIGIN"]
