"""
Ingestion Module
"""
from .manifests import DirectoryManifestSource, ManifestFile, ManifestSource, ManifestTable

__all__ = [
    "DirectoryManifestSource",
    "ManifestFile",
    "ManifestSource",
    "ManifestTable",
]
