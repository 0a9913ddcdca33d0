"""SonarCloud quality and coverage reports for pull requests and branches."""

__version__ = "0.3.0"
