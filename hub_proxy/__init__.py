"""Transparent TCP relay in front of the BYOND hub."""
