"""
Root entry point – delegates to the hexgrid_vision package.

Usage:
    python hexgrid_vision.py recognize  --image shot.png --cells cells.json --bbox 120,80,640,400
    python hexgrid_vision.py detect-roi --image shot.png
"""

from hexgrid_vision.main import main

if __name__ == "__main__":
    main()
