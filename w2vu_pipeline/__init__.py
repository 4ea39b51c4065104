"""Resumable driver for the fairseq wav2vec-U unsupervised speech pipeline."""
