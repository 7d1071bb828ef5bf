"""Upload sessions, transactional writes, job generation and recovery."""
