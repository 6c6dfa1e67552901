"""Oracle-driven agents: proposal, content composition and evaluation."""
