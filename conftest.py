# Shared Test Doubles
# File: conftest.py


class FakeClock:
    """Settable millisecond clock"""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeSurface:
    def __init__(self, drone_id=None, fail_play=False):
        self.drone_id = drone_id
        self.paused = True
        self.fail_play = fail_play
        self.play_calls = 0
        self.released = 0

    def play(self):
        self.play_calls += 1
        if self.fail_play:
            raise RuntimeError("autoplay blocked")
        self.paused = False

    def release(self):
        self.released += 1


class FakeDecoder:
    """Records fed frames instead of decoding them"""

    def __init__(self, surface, ready=True):
        self.surface = surface
        self.is_ready = ready
        self.fed = []
        self.closed = 0

    def feed(self, data):
        if not self.is_ready:
            return False
        self.fed.append(data)
        return True

    def close(self):
        self.closed += 1
        self.is_ready = False
