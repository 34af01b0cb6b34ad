"""Chat pipeline orchestration and background task supervision."""
