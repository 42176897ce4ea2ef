"""
Site ingestion service: crawl a website, chunk and embed its pages.
"""
__version__ = "0.1.0"
