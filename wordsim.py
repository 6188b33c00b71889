# wordsim.py
import argparse
import csv
import logging
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import torch
import torch.nn.functional as F
from scipy.stats import spearmanr


def load_embeddings(model_file):
    data = torch.load(model_file)
    embeddings = data['embeddings']
    word2idx = data['word2idx']
    idx2word = data['idx2word']
    return embeddings, word2idx, idx2word

def load_wordsim(file_path):
    pairs = []
    human_scores = []
    with open(file_path, "r", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = [col.strip() for col in next(reader)]
        if len(header) < 3:
            raise ValueError("CSV file format is incorrect: Expected at least 3 columns (Word1, Word2, Score).")

        for row in reader:
            if len(row) < 3:
                continue  # Skip invalid rows
            word1, word2, score = row[0].strip(), row[1].strip(), row[2].strip()
            try:
                score = float(score)
            except ValueError:
                continue  # Skip rows with non-numeric scores
            pairs.append((word1, word2))
            human_scores.append(score)

    return pairs, human_scores


def compute_cosine_similarity(embeddings, word2idx, word1, word2):
    if word1 not in word2idx or word2 not in word2idx:
        return None
    vec1 = embeddings[word2idx[word1]]
    vec2 = embeddings[word2idx[word2]]
    cos_sim = F.cosine_similarity(vec1.unsqueeze(0), vec2.unsqueeze(0))
    return cos_sim.item()

def evaluate_wordsim(model_file, wordsim_file, results_dir="results", plot=False, lowercase=False):
    """
    Spearman correlation between human similarity scores and cosine
    similarities of induced word vectors. Pairs with an unknown word are
    skipped. Returns (correlation, number of pairs used).
    """
    embeddings, word2idx, idx2word = load_embeddings(model_file)
    pairs, human_scores = load_wordsim(wordsim_file)
    computed_scores = []
    filtered_human = []
    results = []
    for (w1, w2), human_score in zip(pairs, human_scores):
        if lowercase:
            w1, w2 = w1.lower(), w2.lower()
        sim = compute_cosine_similarity(embeddings, word2idx, w1, w2)
        if sim is not None:
            computed_scores.append(sim)
            filtered_human.append(human_score)
            results.append([w1, w2, sim])
    logging.info(f"Covered {len(results)} of {len(pairs)} pairs")

    os.makedirs(results_dir, exist_ok=True)
    output_file = os.path.join(results_dir, f"predicted_{os.path.basename(model_file)}.csv")
    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['Word1', 'Word2', 'Predicted'])
        writer.writerows(results)
    logging.info(f"Predictions saved to {output_file}")

    if len(results) < 2:
        logging.warning("Too few covered pairs for a rank correlation")
        return float("nan"), len(results)
    corr, _ = spearmanr(filtered_human, computed_scores)
    logging.info(f"Spearman Rank Correlation for {model_file}: {corr}")

    if plot:
        plt.figure()
        plt.scatter(filtered_human, computed_scores, alpha=0.5)
        plt.xlabel("Human Similarity Scores")
        plt.ylabel("Cosine Similarity")
        plt.title(f"WordSim Evaluation - {os.path.basename(model_file)}")
        plot_file = os.path.join(results_dir, f"wordsim_{os.path.basename(model_file)}.png")
        plt.savefig(plot_file)
        plt.close()
        logging.info(f"Plot saved to {plot_file}")
    return float(corr), len(results)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser()
    parser.add_argument("--model", type=str, required=True, help="Path to the .pt bundle written next to the word vectors")
    parser.add_argument("--wordsim", type=str, default="wordsim353crowd.csv", help="Path to the WordSim-353 dataset file")
    parser.add_argument("--results", type=str, default="results", help="Directory for predictions and plots")
    parser.add_argument("--lowercase", action="store_true", help="Lowercase the dataset words before lookup")
    parser.add_argument("--plot", action="store_true", help="Plot the results and save to the results folder")
    args = parser.parse_args()
    evaluate_wordsim(args.model, args.wordsim, args.results, args.plot, args.lowercase)
    # Sample usage : python wordsim.py --model out/wordvectors_rare1_window3_sentperline0_cca50_smoothauto_pca1_norm0.pt --wordsim "WordSim353 Crowd.csv" --plot
