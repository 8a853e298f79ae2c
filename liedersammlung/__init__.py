"""Liedersammlung - song collection viewer (scores, lyrics, videos)."""
