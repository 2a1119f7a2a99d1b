"""ghproxy - filtering reverse proxy for GitHub, Hugging Face and Docker downloads."""

__version__ = "0.1.0"
