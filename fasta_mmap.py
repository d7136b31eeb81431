import errno
import logging
import mmap
import os
import stat

logger = logging.getLogger(__name__)


class MappedFasta:
    """
    Read-only, memory-mapped view of a FASTA file.

    The mapping is shared by every worker thread; nothing writes to it, so
    reads need no locking. A zero-length file cannot be mmapped, so it is
    backed by an empty bytes buffer instead.

    Args:
        path (str): Path to the FASTA file.
    """

    def __init__(self, path):
        self.path = path
        self._fd = None
        self._map = None
        try:
            self._fd = os.open(path, os.O_RDONLY)
            st = os.fstat(self._fd)
            if not stat.S_ISREG(st.st_mode):
                raise OSError(errno.EINVAL, "not a regular file", path)
            self.size = st.st_size
            if self.size:
                self._map = mmap.mmap(self._fd, 0, access=mmap.ACCESS_READ)
            else:
                self._map = b''
        except OSError as e:
            logger.error("Failed to map FASTA file '%s': %s", path, e)
            self.close()
            raise
        logger.debug("Mapped '%s' (%d bytes)", path, self.size)

    def _check(self, start, end):
        if not 0 <= start <= end <= self.size:
            raise IndexError(f"range [{start}, {end}) outside mapped file of size {self.size}")

    def find(self, sub, start, end):
        """Offset of the first `sub` in [start, end), or -1."""
        self._check(start, end)
        return self._map.find(sub, start, end)

    def read(self, start, end):
        """Copy of the bytes in [start, end)."""
        self._check(start, end)
        return self._map[start:end]

    def close(self):
        if isinstance(self._map, mmap.mmap):
            self._map.close()
        self._map = None
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def __len__(self):
        return self.size

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
