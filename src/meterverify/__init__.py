"""
MeterVerify - Charger Meter Reading Verification

Reads kWh values from photos of EV charger displays using cloud OCR
with escalating image preprocessing, validates them, and walks each
user through confirming a start and an end reading for a charging
session.
"""

__version__ = "0.1.0"
