"""
SlotCam - Optical Slot-Car Lap Timer

Times laps on a multi-lane slot-car track by watching a finish-line region
per lane in a live video feed and turning frame-to-frame motion into
debounced crossing events, lap records and race results.
"""

__version__ = "0.1.0"
