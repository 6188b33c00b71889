# helper.py
import math
import os
import tempfile
from collections import Counter, defaultdict
from contextlib import contextmanager

import numpy as np
from tqdm import tqdm

from config import BUFFER_STRING, RARE_STRING


@contextmanager
def atomic_write(path, mode="w"):
    """
    Open a temporary file next to `path` and move it into place on success.

    If the block raises, the temporary file is removed and `path` is left
    untouched, so a cache file either exists complete or not at all.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_")
    try:
        with os.fdopen(fd, mode, encoding=None if "b" in mode else "utf-8") as f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def read_corpus(corpus_file, desc="Reading corpus"):
    """Yield the whitespace-separated tokens of each nonblank line."""
    with open(corpus_file, "r", encoding="utf-8") as f:
        for line in tqdm(f, desc=desc, unit=" lines", disable=None):
            tokens = line.split()
            if tokens:
                yield tokens


def count_words(corpus_file):
    # Counter keeps first-seen order, which breaks frequency ties later on
    wordcount = Counter()
    num_words = 0
    for tokens in read_corpus(corpus_file, desc="Counting words"):
        wordcount.update(tokens)
        num_words += len(tokens)
    return wordcount, num_words


def sort_word_counts(wordcount):
    """Sort (word, count) pairs by decreasing count, ties in first-seen order."""
    return sorted(wordcount.items(), key=lambda item: -item[1])


def decide_rare_cutoff(num_words):
    """Cutoff used when none is given: floor(log10(corpus size))."""
    if num_words < 10:
        return 0
    return int(math.floor(math.log10(num_words)))


def determine_rare_words(wordcount, rare_cutoff):
    return {word for word, count in wordcount.items() if count <= rare_cutoff}


class Vocabulary:
    """Append-only bidirectional mapping between strings and dense integer IDs."""

    def __init__(self, strings=()):
        self._num2str = []
        self._str2num = {}
        for string in strings:
            self.add(string)

    def add(self, string):
        num = self._str2num.get(string)
        if num is None:
            num = len(self._num2str)
            self._str2num[string] = num
            self._num2str.append(string)
        return num

    def str2num(self, string):
        return self._str2num[string]

    def num2str(self, num):
        return self._num2str[num]

    def __contains__(self, string):
        return string in self._str2num

    def __len__(self):
        return len(self._num2str)

    def __iter__(self):
        return iter(self._num2str)

    def write(self, path):
        with atomic_write(path) as f:
            for num, string in enumerate(self._num2str):
                f.write(f"{string} {num}\n")

    @classmethod
    def load(cls, path):
        vocab = cls()
        with open(path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                fields = line.split()
                if not fields:
                    continue
                if len(fields) != 2 or int(fields[1]) != len(vocab):
                    raise ValueError(f"{path}:{line_number}: expected '<string> {len(vocab)}', got {line.strip()!r}")
                vocab.add(fields[0])
        return vocab


def window_offsets(window_size):
    """
    Signed context offsets for a window of `window_size` positions.

    The word itself takes one position, the left side gets (size - 1) // 2 of
    the rest and the right side the remainder: size 2 gives [1], size 3
    gives [-1, 1].
    """
    if window_size < 1:
        raise ValueError(f"Window size must be at least 1, got {window_size}")
    left = (window_size - 1) // 2
    right = window_size // 2
    return list(range(-left, 0)) + list(range(1, right + 1))


def context_string(offset, token):
    return f"w({offset})={token}"


def _token_streams(corpus_file, sentence_per_line):
    if sentence_per_line:
        yield from read_corpus(corpus_file, desc="Counting co-occurrences")
    else:
        stream = []
        for tokens in read_corpus(corpus_file, desc="Counting co-occurrences"):
            stream.extend(tokens)
        yield stream


def count_cooccurrences(corpus_file, rare_words, window_size, sentence_per_line=False):
    """
    Count word/context co-occurrences with rare words collapsed.

    Returns (word_vocab, context_vocab, count_word_context, count_word,
    count_context) where count_word_context maps context ID -> word ID ->
    count and the marginals are integer arrays aligned with the vocabularies.
    """
    offsets = window_offsets(window_size)
    word_vocab = Vocabulary()
    context_vocab = Vocabulary()
    count_word_context = defaultdict(Counter)
    count_word = Counter()
    count_context = Counter()

    for stream in _token_streams(corpus_file, sentence_per_line):
        tokens = [RARE_STRING if token in rare_words else token for token in stream]
        for i, token in enumerate(tokens):
            word = word_vocab.add(token)
            count_word[word] += 1
            for offset in offsets:
                j = i + offset
                neighbor = tokens[j] if 0 <= j < len(tokens) else BUFFER_STRING
                context = context_vocab.add(context_string(offset, neighbor))
                count_word_context[context][word] += 1
                count_context[context] += 1

    count_word = np.array([count_word[w] for w in range(len(word_vocab))], dtype=np.int64)
    count_context = np.array([count_context[c] for c in range(len(context_vocab))], dtype=np.int64)
    count_word_context = {c: dict(rows) for c, rows in count_word_context.items()}
    return word_vocab, context_vocab, count_word_context, count_word, count_context


def write_counts(counts, path):
    with atomic_write(path) as f:
        for count in counts:
            f.write(f"{count}\n")


def read_counts(path):
    with open(path, "r", encoding="utf-8") as f:
        return np.array([int(line) for line in f if line.strip()], dtype=np.int64)


def write_sorted_word_types(sorted_wordcount, path):
    with atomic_write(path) as f:
        for word, count in sorted_wordcount:
            f.write(f"{word} {count}\n")


def read_sorted_word_types(path):
    sorted_wordcount = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            fields = line.split()
            if fields:
                sorted_wordcount.append((fields[0], int(fields[1])))
    return sorted_wordcount
