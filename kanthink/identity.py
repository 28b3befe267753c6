__codename__ = "KANTHINK"
__tagline__ = "Boards that think back."
__version__ = "0.4.0"

BANNER = r"""
 _  __   _   _  _ _____ _  _ ___ _  _ _  __
| |/ /  /_\ | \| |_   _| || |_ _| \| | |/ /
| ' <  / _ \| .` | | | | __ || || .` | ' <
|_|\_\/_/ \_\_|\_| |_| |_||_|___|_|\_|_|\_\
"""
