"""Numeric primitives: spectra and time-domain event detectors."""
