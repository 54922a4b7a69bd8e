"""
rulesets package - host list to canonical rule text converter

Modules:
    classify: Header/comment/data line classification
    normalize: Domain-suffix and IP-CIDR normalizers, stream driver and CLI
    fetch_sources: Download sources with retries
    pipeline: Download-and-normalize jobs (domain, ip, mixed)
    utils: Separator handling, atomic writes, stats helpers
"""

__version__ = "1.0.0"
