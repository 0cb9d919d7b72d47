from domaincrawl.schemas.crawl import CrawlJobResponse, JobStatusReport, LinkResponse

__all__ = ["CrawlJobResponse", "JobStatusReport", "LinkResponse"]
