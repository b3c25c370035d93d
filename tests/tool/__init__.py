"""Tests for the gitops-local command line tool."""
