"""Build stage bodies.

This module handles:
- Host environment checks and prerequisite installation
- Kernel fetch, configuration, build and installation
- Mali GPU blob downloads
- Root filesystem bootstrap and configuration
- Bootloader fetch, build and flashing helper

Each stage body takes a StageContext and raises BuildError on fatal failure.
The stage order lives in opi5_builder.pipeline.registry.
"""
