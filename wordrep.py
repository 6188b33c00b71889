# wordrep.py
# Induces lexical representations with CCA between a word and its context.
# In a hard-clustering HMM setting, CCA recovers the emission parameters
# (Stratos et al., 2014, "A spectral algorithm for learning class-based
# n-gram models of natural language").
import argparse
import logging
import os
import shutil

import numpy as np
import torch
from scipy.linalg import eigh
from sklearn.cluster import KMeans
from sklearn.preprocessing import normalize

from cca import SparseCCASolver
from config import *
from helper import (
    Vocabulary,
    atomic_write,
    count_cooccurrences,
    count_words,
    decide_rare_cutoff,
    determine_rare_words,
    read_counts,
    read_sorted_word_types,
    sort_word_counts,
    window_offsets,
    write_counts,
    write_sorted_word_types,
)
from svd import read_sparse_matrix, write_sparse_matrix


def _auto(value):
    if value is None:
        return "auto"
    return repr(float(value)) if isinstance(value, float) else str(value)


def change_of_basis_to_pca(word_matrix):
    """
    Rotate word vectors (rows) into the eigenbasis of their covariance.

    No centering: CCA projections are already zero-mean under the
    normalization. Axes are ordered by decreasing variance and each rotated
    coordinate is signed so that its largest-magnitude entry is positive,
    which makes the frame independent of any rotation of the input. Returns
    the rotated matrix and the variance along each axis.
    """
    if word_matrix.shape[1] == 0:
        return word_matrix, np.zeros(0)
    covariance = word_matrix.T @ word_matrix / word_matrix.shape[0]
    variances, axes = eigh(covariance)
    order = np.argsort(variances)[::-1]
    variances, axes = variances[order], axes[:, order]
    rotated = word_matrix @ axes
    signs = np.sign(rotated[np.argmax(np.abs(rotated), axis=0), np.arange(rotated.shape[1])])
    signs[signs == 0] = 1.0
    return rotated * signs, np.clip(variances, 0.0, None)


class WordRep:
    """
    Word representations induced from corpus counts with CCA.

    `extract_statistics` caches word/context counts in the output directory;
    `induce_lexical_representations` turns the cached counts into word
    vectors, optionally rotated to PCA coordinates, and clusters them with
    k-means. Every cached file name carries a signature of the parameters
    that determine its content.
    """

    def __init__(self, output_directory=None):
        self.rare_cutoff = RARE_CUTOFF
        self.window_size = WINDOW_SIZE
        self.sentence_per_line = SENTENCE_PER_LINE
        self.cca_dim = CCA_DIM
        self.smoothing_term = SMOOTHING_TERM
        self.num_clusters = NUM_CLUSTERS
        self.pca = PCA
        self.normalize_vectors = NORMALIZE_VECTORS
        self.kmeans_max_iter = KMEANS_MAX_ITER

        self.output_directory = None
        self._word_vocab = None
        self._context_vocab = None
        self._wordvectors = {}
        self._singular_values = np.zeros(0)
        self._pca_variance = np.zeros(0)
        self._cluster_assignment = {}
        self._centroids = None
        if output_directory is not None:
            self.set_output_directory(output_directory)

    def set_output_directory(self, output_directory):
        self.output_directory = output_directory
        os.makedirs(output_directory, exist_ok=True)

    def reset_output_directory(self):
        self._check_output_directory()
        shutil.rmtree(self.output_directory)
        os.makedirs(self.output_directory)
        self._word_vocab = None
        self._context_vocab = None

    # --- signatures and paths ---
    def signature(self, version):
        """
        Parameters that determine an artifact:
            0: rare cutoff
            1: + window size, sentence-per-line
            2: + CCA dimension, smoothing, PCA, normalization
            3: + number of clusters
        """
        parts = [f"rare{_auto(self.rare_cutoff)}"]
        if version >= 1:
            parts += [f"window{self.window_size}", f"sentperline{int(self.sentence_per_line)}"]
        if version >= 2:
            parts += [f"cca{self.cca_dim}", f"smooth{_auto(self.smoothing_term)}",
                      f"pca{int(self.pca)}", f"norm{int(self.normalize_vectors)}"]
        if version >= 3:
            parts.append(f"K{self._resolved_num_clusters()}")
        return "_".join(parts)

    def _path(self, name):
        self._check_output_directory()
        return os.path.join(self.output_directory, name)

    def count_word_context_path(self):
        return self._path("count_word_context_" + self.signature(1))

    def count_word_path(self):
        return self._path("count_word_" + self.signature(0))

    def count_context_path(self):
        return self._path("count_context_" + self.signature(1))

    def corpus_info_path(self):
        return self._path("corpus_info")

    def log_path(self):
        return self._path("log")

    def sorted_word_types_path(self):
        return self._path("sorted_word_types")

    def rare_path(self):
        return self._path("rare_words_" + self.signature(0))

    def word_str2num_path(self):
        return self._path("word_str2num_" + self.signature(0))

    def context_str2num_path(self):
        return self._path("context_str2num_" + self.signature(1))

    def wordvectors_path(self):
        return self._path("wordvectors_" + self.signature(2))

    def embeddings_path(self):
        return self.wordvectors_path() + ".pt"

    def singular_values_path(self):
        return self._path("singular_values_" + self.signature(2))

    def pca_variance_path(self):
        return self._path("pca_variance_" + self.signature(2))

    def kmeans_path(self):
        return self._path("kmeans_" + self.signature(3))

    # --- dictionaries ---
    def word_str2num(self, word_string):
        return self._words().str2num(word_string)

    def word_num2str(self, word):
        return self._words().num2str(word)

    def context_str2num(self, context_string):
        return self._contexts().str2num(context_string)

    def context_num2str(self, context):
        return self._contexts().num2str(context)

    def _words(self):
        if self._word_vocab is None:
            self._word_vocab = Vocabulary.load(self._require(self.word_str2num_path()))
        return self._word_vocab

    def _contexts(self):
        if self._context_vocab is None:
            self._context_vocab = Vocabulary.load(self._require(self.context_str2num_path()))
        return self._context_vocab

    # --- results ---
    @property
    def wordvectors(self):
        return self._wordvectors

    @property
    def singular_values(self):
        return self._singular_values

    @property
    def pca_variance(self):
        return self._pca_variance

    @property
    def cluster_assignment(self):
        return self._cluster_assignment

    @property
    def centroids(self):
        return self._centroids

    # --- counting ---
    def extract_statistics(self, corpus_file):
        """Count words, decide rare words and cache word/context counts."""
        self._check_output_directory()
        self._check_counting_parameters()
        if not os.path.isfile(corpus_file):
            raise FileNotFoundError(f"Corpus file not found: {corpus_file}")

        wordcount, num_words = count_words(corpus_file)
        write_sorted_word_types(sort_word_counts(wordcount), self.sorted_word_types_path())
        with atomic_write(self.corpus_info_path()) as f:
            f.write(f"corpus {os.path.abspath(corpus_file)}\n")
            f.write(f"num_words {num_words}\n")
            f.write(f"num_word_types {len(wordcount)}\n")
        logging.info(f"Corpus has {num_words} words of {len(wordcount)} types")

        rare_cutoff = self.rare_cutoff
        if rare_cutoff is None:
            rare_cutoff = decide_rare_cutoff(num_words)
            logging.info(f"Using rare cutoff {rare_cutoff} for a corpus of {num_words} words")
        rare_words = determine_rare_words(wordcount, rare_cutoff)
        with atomic_write(self.rare_path()) as f:
            for word in wordcount:
                if word in rare_words:
                    f.write(f"{word} {wordcount[word]}\n")
        logging.info(f"{len(rare_words)} word types appear <= {rare_cutoff} times and become {RARE_STRING}")

        cached = [self.word_str2num_path(), self.count_word_path(), self.context_str2num_path(),
                  self.count_context_path(), self.count_word_context_path()]
        if all(os.path.exists(path) for path in cached):
            logging.info(f"Reusing cached counts with signature {self.signature(1)}")
            self._word_vocab = None
            self._context_vocab = None
            return

        word_vocab, context_vocab, count_word_context, count_word, count_context = count_cooccurrences(
            corpus_file, rare_words, self.window_size, self.sentence_per_line)
        logging.info(f"Counted {len(word_vocab)} word types and {len(context_vocab)} context types")

        word_vocab.write(self.word_str2num_path())
        write_counts(count_word, self.count_word_path())
        context_vocab.write(self.context_str2num_path())
        write_counts(count_context, self.count_context_path())
        write_sparse_matrix(count_word_context, self.count_word_context_path(), num_columns=len(context_vocab))
        self._word_vocab = word_vocab
        self._context_vocab = context_vocab

    # --- inducing ---
    def induce_lexical_representations(self):
        """Compute word vectors and clusters from cached counts."""
        self._check_output_directory()
        count_word = read_counts(self._require(self.count_word_path()))
        num_words = len(self._words())
        if num_words != len(count_word):
            raise ValueError(f"{self.count_word_path()} has {len(count_word)} counts for {num_words} words")
        self._check_induction_parameters(num_words)

        if os.path.exists(self.wordvectors_path()) and os.path.exists(self.singular_values_path()):
            logging.info(f"Reusing cached word vectors with signature {self.signature(2)}")
            self._load_word_vectors()
        else:
            self._induce_word_vectors(count_word)

        dim = len(next(iter(self._wordvectors.values())))
        if dim == 0:
            logging.warning("No usable CCA dimension; skipping k-means")
            self._cluster_assignment = {}
            self._centroids = None
            return
        self._perform_kmeans(self._resolved_num_clusters(), count_word)

    def _induce_word_vectors(self, count_word):
        word_matrix = self._perform_cca_on_computed_counts(count_word)
        if self.normalize_vectors:
            word_matrix = normalize(word_matrix)
        if self.pca:
            word_matrix, self._pca_variance = change_of_basis_to_pca(word_matrix)
            write_counts(self._pca_variance, self.pca_variance_path())

        words = self._words()
        self._wordvectors = {words.num2str(i): word_matrix[i] for i in range(len(words))}

        with atomic_write(self.wordvectors_path()) as f:
            for word in self._frequency_order(count_word):
                values = " ".join(str(value) for value in word_matrix[word])
                f.write(f"{count_word[word]} {words.num2str(word)} {values}\n")
        write_counts(self._singular_values, self.singular_values_path())
        with atomic_write(self.embeddings_path(), "wb") as f:
            torch.save({
                'embeddings': torch.tensor(word_matrix, dtype=torch.float32),
                'word2idx': {word: i for i, word in enumerate(words)},
                'idx2word': {i: word for i, word in enumerate(words)},
            }, f)
        logging.info(f"Word vectors saved to {self.wordvectors_path()}")

    def _perform_cca_on_computed_counts(self, count_word):
        """Run CCA on the cached counts and return the word-side projection."""
        count_word_context, _ = read_sparse_matrix(self._require(self.count_word_context_path()))
        count_context = read_counts(self._require(self.count_context_path()))

        smoothing_term = self.smoothing_term
        if smoothing_term is None:
            smoothing_term = float(count_word.min())
            logging.info(f"Using smoothing term {smoothing_term:g} (smallest word count)")

        solver = SparseCCASolver(self.cca_dim, smoothing_term)
        solver.perform_cca(count_word_context, count_word, count_context)
        self._singular_values = solver.cca_correlations
        if solver.rank < self.cca_dim:
            logging.warning(f"CCA found {solver.rank} of {self.cca_dim} dimensions; "
                            "consider a larger smoothing term")
        logging.info("Canonical correlations: " + " ".join(f"{value:.4f}" for value in self._singular_values))
        return solver.projection_x[:len(count_word)]

    def _load_word_vectors(self):
        words = self._words()
        self._wordvectors = {}
        with open(self.wordvectors_path(), "r", encoding="utf-8") as f:
            for line in f:
                fields = line.split()
                if fields:
                    self._wordvectors[fields[1]] = np.array([float(value) for value in fields[2:]])
        missing = [word for word in words if word not in self._wordvectors]
        if missing:
            raise ValueError(f"{self.wordvectors_path()} lacks vectors for {len(missing)} words")
        self._singular_values = read_floats(self.singular_values_path())
        if self.pca and os.path.exists(self.pca_variance_path()):
            self._pca_variance = read_floats(self.pca_variance_path())

    def _perform_kmeans(self, num_clusters, count_word):
        """
        Hard clustering of the word vectors. Centroids start at the vectors of
        the most frequent word types, so the result is fully deterministic.
        """
        words = self._words()
        word_matrix = np.vstack([self._wordvectors[word] for word in words])
        order = self._seed_order()
        kmeans = KMeans(n_clusters=num_clusters, init=word_matrix[order[:num_clusters]],
                        n_init=1, max_iter=self.kmeans_max_iter, tol=0.0)
        labels = kmeans.fit_predict(word_matrix)
        logging.info(f"K-means with K={num_clusters} stopped after {kmeans.n_iter_} iterations")

        self._cluster_assignment = {words.num2str(i): int(labels[i]) for i in range(len(words))}
        self._centroids = kmeans.cluster_centers_
        with atomic_write(self.kmeans_path()) as f:
            for word in sorted(order, key=lambda w: labels[w]):
                f.write(f"{labels[word]} {words.num2str(word)} {count_word[word]}\n")

    # --- checks ---
    @staticmethod
    def _frequency_order(count_word):
        # decreasing count, ties by ID (first-seen order)
        return sorted(range(len(count_word)), key=lambda w: -count_word[w])

    def _seed_order(self):
        """Word IDs by decreasing raw corpus frequency; rare types rank at their most frequent member."""
        words = self._words()
        sorted_word_types = read_sorted_word_types(self._require(self.sorted_word_types_path()))
        order = dict.fromkeys(
            words.str2num(word if word in words else RARE_STRING) for word, _ in sorted_word_types)
        return list(order)

    def _resolved_num_clusters(self):
        return self.cca_dim if self.num_clusters is None else self.num_clusters

    def _check_output_directory(self):
        if self.output_directory is None:
            raise ValueError("Output directory is not set")

    def _check_counting_parameters(self):
        if self.rare_cutoff is not None and self.rare_cutoff < 0:
            raise ValueError(f"Rare cutoff must be non-negative, got {self.rare_cutoff}")
        if not window_offsets(self.window_size):
            logging.warning(f"Window size {self.window_size} has no context positions")

    def _check_induction_parameters(self, num_words):
        if self.cca_dim is None or not 1 <= self.cca_dim <= num_words:
            raise ValueError(f"CCA dimension must be between 1 and the vocabulary size {num_words}, "
                             f"got {self.cca_dim}")
        num_clusters = self._resolved_num_clusters()
        if not 1 <= num_clusters <= num_words:
            raise ValueError(f"Number of clusters must be between 1 and the vocabulary size {num_words}, "
                             f"got {num_clusters}")
        if self.smoothing_term is not None and self.smoothing_term < 0:
            raise ValueError(f"Smoothing term must be non-negative, got {self.smoothing_term}")

    @staticmethod
    def _require(path):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Missing cached file {path}; run extract_statistics first")
        return path


def read_floats(path):
    with open(path, "r", encoding="utf-8") as f:
        return np.array([float(line) for line in f if line.strip()])


def auto_int(value):
    return None if value == "auto" else int(value)


def auto_float(value):
    return None if value == "auto" else float(value)


def main():
    parser = argparse.ArgumentParser(description="Induce word representations with CCA.")
    parser.add_argument("--corpus", type=str, help="Path to the text corpus (omit to reuse cached counts)")
    parser.add_argument("--output", type=str, required=True, help="Output directory for cached files")
    parser.add_argument("--rare", type=auto_int, default=RARE_CUTOFF, help="Rare word cutoff or 'auto'")
    parser.add_argument("--window", type=int, default=WINDOW_SIZE, help="Context window size")
    parser.add_argument("--sentence_per_line", action="store_true", help="One sentence per line in the corpus")
    parser.add_argument("--cca_dim", type=int, default=CCA_DIM, help="Dimension of the CCA subspace")
    parser.add_argument("--smoothing", type=auto_float, default=SMOOTHING_TERM, help="Smoothing term or 'auto'")
    parser.add_argument("--num_clusters", type=int, default=NUM_CLUSTERS,
                        help="Number of k-means clusters (defaults to the CCA dimension)")
    parser.add_argument("--no_pca", action="store_true", help="Keep the raw CCA coordinates")
    parser.add_argument("--normalize", action="store_true", help="L2-normalize word vectors before PCA")
    parser.add_argument("--reset", action="store_true", help="Remove the content of the output directory first")
    args = parser.parse_args()

    wordrep = WordRep(args.output)
    if args.reset:
        wordrep.reset_output_directory()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s",
                        handlers=[logging.StreamHandler(), logging.FileHandler(wordrep.log_path())])

    wordrep.rare_cutoff = args.rare
    wordrep.window_size = args.window
    wordrep.sentence_per_line = args.sentence_per_line
    wordrep.cca_dim = args.cca_dim
    wordrep.smoothing_term = args.smoothing
    wordrep.num_clusters = args.num_clusters
    wordrep.pca = not args.no_pca
    wordrep.normalize_vectors = args.normalize

    try:
        if args.corpus:
            wordrep.extract_statistics(args.corpus)
        wordrep.induce_lexical_representations()
    except Exception as e:
        logging.error(f"Failed to induce word representations: {str(e)}")
        raise


if __name__ == "__main__":
    main()
