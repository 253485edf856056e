"""ACE assistant: tool orchestration and query safety for the transit analytics chat."""

__version__ = "0.4.0"
