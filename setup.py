from setuptools import setup

setup(
    name="m4smerge",
    version="1.0.0",
    description="Rebuild playable videos from Bilibili .m4s cache segments",
    license="MIT",
    py_modules=["m4smerge", "danmaku"],
    install_requires=[
        "lxml>=4.9.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "m4smerge=m4smerge:main",
        ],
    },
    python_requires=">=3.9",
)
