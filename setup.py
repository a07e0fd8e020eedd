from setuptools import setup


setup(
    name="sheet-assist",
    version="0.1.0",
    description="AI-assisted table fixes and formula generation for Excel workbooks",
    packages=["sheet_assist"],
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "streamlit",
        "requests",
        "fastapi",
        "uvicorn",
        "pydantic",
        "starlette",
    ],
    extras_require={
        "test": ["httpx"],
    },
    entry_points={
        "console_scripts": [
            "sheet-assist=sheet_assist.cli:main",
        ]
    },
)
