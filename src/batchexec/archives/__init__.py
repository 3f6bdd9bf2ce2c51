from batchexec.archives.base import Archive, ArchiveSource
from batchexec.archives.fetcher import ArchiveFetcher
from batchexec.archives.http import HttpArchiveSource
from batchexec.archives.local import DirectoryArchiveSource

__all__ = [
    "Archive",
    "ArchiveFetcher",
    "ArchiveSource",
    "DirectoryArchiveSource",
    "HttpArchiveSource",
]
