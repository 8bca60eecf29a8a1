"""Shared test fixtures for profile search tests."""

import threading

import numpy as np
import cv2
import pytest


class ThumbnailExtractor:
    """Deterministic stand-in extractor: mean-centered 8x8 grayscale thumbnail."""

    dim = 64

    def __init__(self):
        self.calls = 0

    def embed(self, image):
        self.calls += 1
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY) if image.ndim == 3 else image
        thumb = cv2.resize(gray, (8, 8), interpolation=cv2.INTER_AREA).astype(np.float32)
        return (thumb - thumb.mean()).flatten()


class BlockingExtractor(ThumbnailExtractor):
    """Extractor whose embed() waits until released, to simulate a slow model."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, image):
        self.entered.set()
        self.release.wait(5)
        return super().embed(image)


class ListFrameSource:
    """Frame source replaying a list of frames, then repeating the last one."""

    def __init__(self, frames, repeat=True):
        self.frames = list(frames)
        self.repeat = repeat
        self.reads = 0
        self.released = 0

    def read(self):
        if not self.frames:
            return None
        self.reads += 1
        if len(self.frames) > 1 or not self.repeat:
            return self.frames.pop(0)
        return self.frames[0]

    def release(self):
        self.released += 1


@pytest.fixture
def extractor():
    return ThumbnailExtractor()


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def l_profile_image():
    """An L-shaped profile section: differs from its own mirror image."""
    img = np.ones((224, 224, 3), dtype=np.uint8) * 255
    img[30:200, 30:80] = [40, 40, 40]
    img[150:200, 30:190] = [40, 40, 40]
    return img


@pytest.fixture
def t_profile_image():
    """A T-shaped profile section."""
    img = np.ones((224, 224, 3), dtype=np.uint8) * 255
    img[30:80, 30:194] = [40, 40, 40]
    img[30:200, 92:132] = [40, 40, 40]
    return img


@pytest.fixture
def wide_frame():
    """A 480x640 camera-like frame with a dark block in the center."""
    img = np.ones((480, 640, 3), dtype=np.uint8) * 230
    img[180:300, 260:380] = [20, 20, 20]
    return img
