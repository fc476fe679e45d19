"""
Client side of guided face-pose enrollment: the capture controller, the
enrollment API client and the webcam frame source.
"""
