import pytest


@pytest.fixture()
def write_fasta(tmp_path):
    """Factory writing raw FASTA bytes to a file under tmp_path."""
    def _write(content, name="input.fasta"):
        path = tmp_path / name
        path.write_bytes(content.encode("utf-8") if isinstance(content, str) else content)
        return path
    return _write


@pytest.fixture()
def two_records(write_fasta):
    return write_fasta(">seq1\nGGCCAATT\n>seq2\nNNNN\n")
