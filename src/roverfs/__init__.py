"""Uniform filesystem access to object stores, FTP servers and local disks."""

__VERSION__ = "0.1.0"
