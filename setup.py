from setuptools import setup, find_packages

setup(
    name='gesture-device-control',
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.9',
    install_requires=[
        'setuptools',
        'numpy>=1.24',
        'opencv-python>=4.8',
        'mediapipe>=0.10',
        'aiohttp>=3.9',
        'websockets>=12.0',
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'pydantic>=2.0',
        'paho-mqtt>=2.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'httpx>=0.25',
        ],
    },
    zip_safe=True,
    maintainer='Hasan Çoban',
    maintainer_email='hasancoban@std.iyte.edu.tr',
    description='Hand gesture control of smart-home devices',
    license='MIT',
    entry_points={
        'console_scripts': [
            'gesture-control = gesture_control.main:main',
            'device-registry = device_registry.main:main',
        ],
    },
)
