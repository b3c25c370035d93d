"""Tests for the template module."""
