"""Duet: stream a code-generation CLI and its review over Server-Sent Events."""
