# Core Package
# Configuration, logging and rate limiting
