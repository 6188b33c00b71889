"""
Tests for the representation inducer on the corpus "a b c / a b d / a b e".

Counts are checked through the cached files, mapped back to strings with the
inducer's dictionaries.
"""

import os

import numpy as np
import pytest

import wordrep as wordrep_module
from config import BUFFER_STRING, RARE_STRING
from svd import read_sparse_matrix
from wordrep import WordRep, change_of_basis_to_pca, read_floats
from wordsim import load_embeddings


def cached_counts(rep):
    column_map, _ = read_sparse_matrix(rep.count_word_context_path())
    word_context = {
        (rep.context_num2str(c), rep.word_num2str(w)): int(count)
        for c, rows in column_map.items()
        for w, count in rows.items()
    }
    with open(rep.count_word_path(), encoding="utf-8") as f:
        words = {rep.word_num2str(i): int(line) for i, line in enumerate(f)}
    with open(rep.count_context_path(), encoding="utf-8") as f:
        contexts = {rep.context_num2str(i): int(line) for i, line in enumerate(f)}
    return word_context, words, contexts


def make_rep(output_dir, **params):
    rep = WordRep(output_dir)
    for name, value in params.items():
        setattr(rep, name, value)
    return rep


class TestExtractStatistics:
    """Cached count files."""

    def test_counts_cutoff0_window2(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2)
        rep.extract_statistics(corpus_file)

        word_context, words, contexts = cached_counts(rep)

        buffer = f"w(1)={BUFFER_STRING}"
        assert word_context == {
            ("w(1)=b", "a"): 3,
            ("w(1)=c", "b"): 1,
            ("w(1)=a", "c"): 1,
            ("w(1)=d", "b"): 1,
            ("w(1)=a", "d"): 1,
            ("w(1)=e", "b"): 1,
            (buffer, "e"): 1,
        }
        assert words == {"a": 3, "b": 3, "c": 1, "d": 1, "e": 1}
        assert contexts == {"w(1)=b": 3, "w(1)=c": 1, "w(1)=a": 2, "w(1)=d": 1, "w(1)=e": 1, buffer: 1}

    def test_counts_cutoff1_window3(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1, window_size=3)
        rep.extract_statistics(corpus_file)

        word_context, words, contexts = cached_counts(rep)

        # <!> a b <?> a b <?> a b <?> <!>
        assert word_context == {
            ("w(-1)=<!>", "a"): 1,
            ("w(1)=b", "a"): 3,
            ("w(-1)=a", "b"): 3,
            ("w(1)=<?>", "b"): 3,
            ("w(-1)=b", "<?>"): 3,
            ("w(1)=a", "<?>"): 2,
            ("w(-1)=<?>", "a"): 2,
            ("w(1)=<!>", "<?>"): 1,
        }
        assert words == {"a": 3, "b": 3, "<?>": 3}
        assert contexts == {
            "w(-1)=<!>": 1, "w(1)=b": 3, "w(-1)=a": 3, "w(1)=<?>": 3,
            "w(-1)=b": 3, "w(1)=a": 2, "w(-1)=<?>": 2, "w(1)=<!>": 1,
        }

    def test_counts_cutoff1_window3_sentence_per_line(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1, window_size=3, sentence_per_line=True)
        rep.extract_statistics(corpus_file)

        word_context, words, contexts = cached_counts(rep)

        # <!> a b <?> <!>, three times
        assert word_context == {
            ("w(-1)=<!>", "a"): 3,
            ("w(1)=b", "a"): 3,
            ("w(-1)=a", "b"): 3,
            ("w(1)=<?>", "b"): 3,
            ("w(-1)=b", "<?>"): 3,
            ("w(1)=<!>", "<?>"): 3,
        }
        assert words == {"a": 3, "b": 3, "<?>": 3}
        assert set(contexts.values()) == {3}

    def test_rare_words_file(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1)
        rep.extract_statistics(corpus_file)

        with open(rep.rare_path(), encoding="utf-8") as f:
            assert f.read() == "c 1\nd 1\ne 1\n"

    def test_auto_cutoff_keeps_small_corpus_intact(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=None, window_size=2)
        rep.extract_statistics(corpus_file)

        _, words, _ = cached_counts(rep)
        assert set(words) == {"a", "b", "c", "d", "e"}
        assert "rareauto" in rep.count_word_path()

    def test_signatures_separate_parameters(self, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1, window_size=3)
        path = rep.count_word_context_path()
        word_path = rep.count_word_path()

        rep.window_size = 5
        assert rep.count_word_context_path() != path
        assert rep.count_word_path() == word_path

        rep.window_size = 3
        rep.sentence_per_line = True
        assert rep.count_word_context_path() != path

        rep.sentence_per_line = False
        assert rep.count_word_context_path() == path

        vectors_path = rep.wordvectors_path()
        rep.smoothing_term = 0.5
        assert rep.wordvectors_path() != vectors_path
        kmeans_path = rep.kmeans_path()
        rep.num_clusters = 3
        assert rep.kmeans_path() != kmeans_path

    def test_close_smoothing_values_get_distinct_signatures(self, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1, smoothing_term=1.0)
        vectors_path = rep.wordvectors_path()

        rep.smoothing_term = 1.0000001

        assert rep.wordvectors_path() != vectors_path
        assert "rare1_" in rep.wordvectors_path()

    def test_cached_counts_are_reused(self, corpus_file, output_dir, monkeypatch):
        make_rep(output_dir, rare_cutoff=0, window_size=2).extract_statistics(corpus_file)

        def fail(*args, **kwargs):
            raise AssertionError("counts should come from the cache")

        monkeypatch.setattr(wordrep_module, "count_cooccurrences", fail)
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2)
        rep.extract_statistics(corpus_file)

        assert rep.word_num2str(0) == "a"
        assert rep.context_str2num("w(1)=b") == 0

    def test_zero_window_is_rejected(self, corpus_file, output_dir):
        rep = make_rep(output_dir, window_size=0)

        with pytest.raises(ValueError):
            rep.extract_statistics(corpus_file)
        assert os.listdir(output_dir) == []

    def test_missing_corpus(self, output_dir, tmp_path):
        rep = WordRep(output_dir)

        with pytest.raises(FileNotFoundError):
            rep.extract_statistics(str(tmp_path / "missing.txt"))

    def test_output_directory_required(self, corpus_file):
        with pytest.raises(ValueError):
            WordRep().extract_statistics(corpus_file)

    def test_reset_output_directory(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2)
        rep.extract_statistics(corpus_file)

        rep.reset_output_directory()

        assert os.listdir(output_dir) == []


class TestInduceLexicalRepresentations:
    """CCA vectors, PCA rotation and k-means on cached counts."""

    def test_svd_fails_without_smoothing(self, corpus_file, output_dir):
        # every nonzero singular value of the correlation matrix is 1
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=0.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        assert len(rep.singular_values) < 2
        assert rep.singular_values[0] == pytest.approx(1.0, abs=1e-4)
        assert all(len(vector) == len(rep.singular_values) for vector in rep.wordvectors.values())

    def test_svd_succeeds_with_smoothing(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        assert np.allclose(rep.singular_values, [0.7500, 0.6124], atol=1e-4)
        assert set(rep.wordvectors) == {"a", "b", "c", "d", "e"}
        assert all(vector.shape == (2,) for vector in rep.wordvectors.values())
        assert np.allclose(read_floats(rep.singular_values_path()), rep.singular_values)

    def test_pca_variances_are_sorted(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        variances = read_floats(rep.pca_variance_path())
        assert len(variances) == 2
        assert variances[0] >= variances[1] >= 0.0

    def test_identical_words_share_a_vector(self, corpus_file, output_dir):
        # c and d are only ever followed by a
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        assert np.allclose(rep.wordvectors["c"], rep.wordvectors["d"])
        assert rep.cluster_assignment["c"] == rep.cluster_assignment["d"]

    def test_kmeans_assignment(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        assert set(rep.cluster_assignment) == {"a", "b", "c", "d", "e"}
        assert set(rep.cluster_assignment.values()) <= {0, 1}
        assert rep.centroids.shape == (2, 2)
        with open(rep.kmeans_path(), encoding="utf-8") as f:
            lines = [line.split() for line in f]
        assert sorted(fields[1] for fields in lines) == ["a", "b", "c", "d", "e"]
        assert all(int(fields[0]) == rep.cluster_assignment[fields[1]] for fields in lines)

    def test_kmeans_seeds_follow_raw_frequency(self, output_dir, tmp_path):
        # five singletons collapse into a rare type more frequent than "a"
        corpus = tmp_path / "rare_heavy.txt"
        corpus.write_text("a b c\na b d\na e f g\n", encoding="utf-8")
        rep = make_rep(output_dir, rare_cutoff=1, window_size=2)
        rep.extract_statistics(str(corpus))

        seeds = [rep.word_num2str(word) for word in rep._seed_order()]

        assert seeds == ["a", "b", RARE_STRING]

    def test_pipeline_is_deterministic(self, corpus_file, tmp_path):
        reps = []
        for name in ("first", "second"):
            rep = make_rep(str(tmp_path / name), rare_cutoff=0, window_size=3,
                           cca_dim=2, smoothing_term=1.0, num_clusters=3)
            rep.extract_statistics(corpus_file)
            rep.induce_lexical_representations()
            reps.append(rep)

        first, second = reps
        assert np.array_equal(first.singular_values, second.singular_values)
        for word, vector in first.wordvectors.items():
            assert np.array_equal(vector, second.wordvectors[word])
        assert first.cluster_assignment == second.cluster_assignment

    def test_cached_vectors_are_reused(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        again = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        again.induce_lexical_representations()

        assert np.array_equal(again.singular_values, rep.singular_values)
        for word, vector in rep.wordvectors.items():
            assert np.array_equal(again.wordvectors[word], vector)
        assert again.cluster_assignment == rep.cluster_assignment

    def test_auto_smoothing(self, corpus_file, output_dir):
        # the smallest word count is 1, so auto smoothing matches smoothing 1
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=None)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        assert np.allclose(rep.singular_values, [0.7500, 0.6124], atol=1e-4)

    def test_embeddings_bundle(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)
        rep.induce_lexical_representations()

        embeddings, word2idx, idx2word = load_embeddings(rep.embeddings_path())

        assert tuple(embeddings.shape) == (5, 2)
        assert idx2word[word2idx["b"]] == "b"
        assert np.allclose(embeddings[word2idx["b"]].numpy(), rep.wordvectors["b"], atol=1e-6)

    def test_cca_dim_above_vocabulary_is_rejected(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=1, window_size=3, cca_dim=4, smoothing_term=1.0)
        rep.extract_statistics(corpus_file)

        with pytest.raises(ValueError):
            rep.induce_lexical_representations()
        assert not os.path.exists(rep.wordvectors_path())

    def test_num_clusters_above_vocabulary_is_rejected(self, corpus_file, output_dir):
        rep = make_rep(output_dir, rare_cutoff=0, window_size=2, cca_dim=2, num_clusters=6)
        rep.extract_statistics(corpus_file)

        with pytest.raises(ValueError):
            rep.induce_lexical_representations()

    def test_requires_extracted_statistics(self, output_dir):
        rep = make_rep(output_dir, cca_dim=2)

        with pytest.raises(FileNotFoundError):
            rep.induce_lexical_representations()


class TestChangeOfBasisToPCA:
    """PCA rotation of word vectors."""

    def test_rotation_diagonalizes_covariance(self):
        word_matrix = np.random.default_rng(3).standard_normal((20, 4)) * [1.0, 5.0, 0.5, 2.0]

        rotated, variances = change_of_basis_to_pca(word_matrix)

        covariance = rotated.T @ rotated / len(rotated)
        assert np.allclose(covariance, np.diag(variances), atol=1e-10)
        assert np.all(np.diff(variances) <= 0)

    def test_rotation_preserves_geometry(self):
        word_matrix = np.random.default_rng(5).standard_normal((10, 3))

        rotated, _ = change_of_basis_to_pca(word_matrix)

        assert np.allclose(rotated @ rotated.T, word_matrix @ word_matrix.T)

    def test_frame_ignores_input_rotation(self):
        word_matrix = np.random.default_rng(11).standard_normal((12, 3)) * [3.0, 2.0, 1.0]
        angle = 0.7
        rotation = np.array([[np.cos(angle), -np.sin(angle), 0.0],
                             [np.sin(angle), np.cos(angle), 0.0],
                             [0.0, 0.0, 1.0]])

        rotated, _ = change_of_basis_to_pca(word_matrix)
        rotated_again, _ = change_of_basis_to_pca(word_matrix @ rotation)

        assert np.allclose(rotated, rotated_again, atol=1e-8)
