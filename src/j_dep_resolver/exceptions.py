"""Custom exceptions for J-Dep Resolver."""


class JDepError(Exception):
    """Base exception for J-Dep Resolver."""


class ConfigurationError(JDepError):
    """Raised for fatal setup problems: unusable proxy, unreadable POM or metadata."""


class PomNotFoundError(ConfigurationError):
    """Raised when a pom.xml file cannot be found."""


class PomParseError(ConfigurationError):
    """Raised when a pom.xml file cannot be parsed."""


class PomModelError(ConfigurationError):
    """Raised when required Maven model fields are missing or invalid."""


class MetadataParseError(ConfigurationError):
    """Raised when a maven-metadata.xml document cannot be parsed."""


class ArtifactNotFoundError(JDepError):
    """Raised when a repository answers 400/404 for a requested file."""


class RepositoryTransportError(JDepError):
    """Raised when a repository cannot be used (proxy failure, server error)."""


class ChecksumMismatchError(JDepError):
    """Raised when a payload does not match its SHA-1 sidecar after the retry."""
