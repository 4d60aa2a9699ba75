"""Test suite for the realtime coach client."""
