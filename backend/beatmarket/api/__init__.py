"""API package for the BeatMarket backend."""
