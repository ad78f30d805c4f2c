"""Runtime components: task reconciliation, agent lifecycle and session backends."""
