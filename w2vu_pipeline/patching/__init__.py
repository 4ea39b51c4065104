"""Structured edits to files owned by the external tools.

- YAML config documents addressed by dotted paths
- ``name=value`` variable files (Kaldi recipe scripts)
- small line-level fixes to third-party sources and scripts

Every function reads the whole file, applies its change in memory and only
then writes, so a failed patch never leaves a half-edited file behind.
"""
