"""Tests for the source controller module."""
