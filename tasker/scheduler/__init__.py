"""Task scheduling — models, persistence, timers and the task lifecycle manager."""
