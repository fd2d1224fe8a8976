"""Operations toolkit for a containerized DocSpace deployment."""

__version__ = "0.1.0"
