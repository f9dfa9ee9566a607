import logging
import time


class Timer:
    """
    Named stopwatches used to account for the time spent in each phase of
    an iteration (active sampling, surrogate fit, variational fit).
    """

    def __init__(self):
        self._start_times = {}
        self._durations = {}

    def start_timer(self, name: str):
        """
        Start the stopwatch ``name``. Starting a running stopwatch is a no-op.
        """
        self._start_times.setdefault(name, time.time())

    def stop_timer(self, name: str):
        """
        Stop the stopwatch ``name`` and accumulate the elapsed time.

        Parameters
        ----------
        name : str
            The name of the stopwatch.
        """
        start = self._start_times.pop(name, None)
        if start is None:
            logging.getLogger("timer").warning(
                "Timer start not found for key '%s'.", name
            )
            return
        self._durations[name] = self._durations.get(name, 0.0) + (
            time.time() - start
        )

    def get_duration(self, name: str):
        """
        Return the accumulated duration of ``name``, or ``None`` if the
        stopwatch never ran.
        """
        duration = self._durations.get(name)
        if duration is None:
            logging.getLogger("timer").warning(
                "Timer duration not found for key '%s'.", name
            )
        return duration

    def durations(self):
        """Return a copy of all accumulated durations."""
        return dict(self._durations)

    def reset(self):
        """
        Forget all durations and running stopwatches.
        """
        self._durations = {}
        self._start_times = {}
