"""Driving school management API: staff/viewer auth and payment collection."""
