# config.py
# Default parameters for inducing CCA word representations.

# Word types appearing <= this many times become the rare symbol.
# None lets the model decide from the corpus size.
RARE_CUTOFF = None

# Context window; odd sizes give left and right contexts of the same length.
WINDOW_SIZE = 3

SENTENCE_PER_LINE = False

CCA_DIM = 50

# Added to the counts dividing the correlation matrix.
# None lets the model decide from the smallest word count.
SMOOTHING_TERM = None

# None uses the CCA dimension.
NUM_CLUSTERS = None

PCA = True
NORMALIZE_VECTORS = False
KMEANS_MAX_ITER = 100

SVD_SEED = 0

RARE_STRING = "<?>"
BUFFER_STRING = "<!>"
