"""Inference-backed detection, resolution judging and correction."""
