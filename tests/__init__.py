"""Tests for gitops-local."""
