"""Self-assessment: answer quality scoring, reflexion lessons and graph lookups."""
