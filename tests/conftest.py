import pytest


@pytest.fixture
def corpus_file(tmp_path):
    """Three short sentences: a b c / a b d / a b e."""
    path = tmp_path / "corpus.txt"
    path.write_text("a b c\na b d\na b e\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def output_dir(tmp_path):
    return str(tmp_path / "output")
