"""PlaybookQA -- declarative playbooks for iOS simulator UI testing."""

__version__ = "0.4.0"
