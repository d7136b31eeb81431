import pytest

from fasta_mmap import MappedFasta


def test_maps_whole_file(two_records):
    with MappedFasta(str(two_records)) as mapped:
        assert mapped.size == len(two_records.read_bytes())
        assert len(mapped) == mapped.size
        assert mapped.read(0, 5) == b">seq1"
        assert mapped.find(b">", 1, mapped.size) == 15


def test_find_respects_range(two_records):
    with MappedFasta(str(two_records)) as mapped:
        assert mapped.find(b">", 1, 15) == -1
        assert mapped.find(b"N", 0, mapped.size) == 21


def test_empty_file(write_fasta):
    path = write_fasta("")
    with MappedFasta(str(path)) as mapped:
        assert mapped.size == 0
        assert mapped.read(0, 0) == b""
        assert mapped.find(b">", 0, 0) == -1


@pytest.mark.parametrize("start, end", [(-1, 3), (5, 4), (0, 1000)])
def test_out_of_range_access_raises(two_records, start, end):
    with MappedFasta(str(two_records)) as mapped:
        with pytest.raises(IndexError):
            mapped.read(start, end)
        with pytest.raises(IndexError):
            mapped.find(b">", start, end)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        MappedFasta(str(tmp_path / "missing.fasta"))


def test_directory_is_rejected(tmp_path):
    with pytest.raises(OSError):
        MappedFasta(str(tmp_path))


def test_close_is_idempotent(two_records):
    mapped = MappedFasta(str(two_records))
    mapped.close()
    mapped.close()
