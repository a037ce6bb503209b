"""
LessonMedia — setuptools build script.

Usage:
    # Development (editable — links to source):
    pip install -e .[test]

    # Run the test suite:
    python -m unittest discover -s tests
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "lesson-media"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Lesson video transcription queue and HLS rendition builder",
    packages=find_namespace_packages(include=["lesson_media", "lesson_media.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "lesson-media=main:main",
        ],
    },
)
