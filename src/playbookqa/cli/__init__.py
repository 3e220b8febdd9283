"""PlaybookQA CLI package."""
