# setup.py
from setuptools import setup, find_packages
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding="utf-8")

setup(
    name="ocr-server",
    version="1.0.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", include=["ocrserver", "ocrserver.*"]),
    description="A multi-instance, filesystem-driven OCR server that turns scanned PDFs into searchable PDF/A.",
    long_description=long_description,
    long_description_content_type='text/markdown',
    python_requires=">=3.9",

    install_requires=[
        "PyMuPDF>=1.23",
        "tqdm",
        "Pillow",
        "numpy",
        "pytesseract",
        "python-slugify",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'ocr-server=ocrserver.cli:main',
        ],
    },
)
