from setuptools import setup, find_packages
import os
import logging

logger = logging.getLogger(__name__)

# Function to read requirements from requirements.txt
def parse_requirements(filename="requirements.txt"):
    """Load requirements from a pip requirements file."""
    try:
        with open(os.path.join(os.path.dirname(__file__), filename), 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith("#")]
    except FileNotFoundError:
        logger.warning(f"Warning: {filename} not found. Proceeding without defined requirements.")
        return []

setup(
    name="derivdesk",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["config", "main"],
    install_requires=parse_requirements(),
    extras_require={
        "test": ["pytest>=7.0"],
    },
    author="DerivDesk Team",
    description="DerivDesk: WebSocket client and digit statistics for the Deriv API",
    long_description=open('README.md').read() if os.path.exists('README.md') else '',
    long_description_content_type='text/markdown',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Intended Audience :: Developers",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial :: Investment",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'derivdesk=main:run',
        ],
    },
)
