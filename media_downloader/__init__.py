"""media-downloader: broker-mediated media acquisition pipeline."""

__version__ = "0.1.0"
