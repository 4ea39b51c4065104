"""Resumable orchestration of the wav2vec-U pipeline.

This package provides:
- Pipeline configuration (TOML)
- The append-only step checkpoint store
- The step runner and the fixed step sequence of each stage

Each stage is safe to re-run after an interruption or failure: steps that
already completed are skipped and the failed step is retried.
"""
