"""Token estimation and context-window trimming."""
