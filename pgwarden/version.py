# Copyright (c) 2024 Aiven, Helsinki, Finland. https://aiven.io/
__version__ = '1.0.0'
