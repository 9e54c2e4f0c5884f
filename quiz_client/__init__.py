"""Async client for the course-and-quiz API: credential renewal and timed quiz sessions."""

VERSION = "0.1.0"
