"""
Event driven data arrival: a watchdog observer reports raw files as they
are written or renamed into the input directory.
"""

import os
import time
import queue

from watchdog.observers import Observer
from watchdog.events import PatternMatchingEventHandler

from obspipe.errors import LoopTimeout


class RawFileAlarm(PatternMatchingEventHandler):
    """
    Queues raw data files reported by the observer. Hidden files (rsync
    temporaries, flag files) are ignored; a temporary renamed to its final
    name is reported through on_moved.
    """

    def __init__(self, naming, files, logger, patterns=None, cooldown=1.0):
        PatternMatchingEventHandler.__init__(self, patterns=patterns or ['*' + naming.suffix],
                                             ignore_patterns=['*/.*', '*/*~'])
        self.naming = naming
        self.files = files
        self.logging = logger
        self.cooldown = cooldown
        self.file_cache = {}

    def check_redundant(self, path):
        # ignore repeated events for one file within the cooldown
        now = time.time()
        last_update = self.file_cache.get(path)
        if last_update is not None and now - last_update < 2 * self.cooldown:
            self.logging.debug("Ignoring duplicate file event: {}".format(path))
            return False
        self.file_cache[path] = now
        return True

    def process(self, path):
        if not self.naming.is_raw(path):
            return
        if self.check_redundant(path):
            self.files.put(path)

    def on_created(self, event):
        if event.is_directory:
            return
        self.logging.debug("File creation event: {}".format(event.src_path))
        self.process(event.src_path)

    def on_moved(self, event):
        if event.is_directory:
            return
        self.logging.debug("File move event: {} -> {}".format(event.src_path, event.dest_path))
        self.process(event.dest_path)


class WatchLoop(object):
    """
    Loop strategy fed by a filesystem observer. Raw files already present
    with a number at or above the cursor are reduced first, in number order.

    Args:
        loop (DataLoop): supplies the directories, naming, timeout and frame set up
        logger (logging.Logger): logger
        observer_factory (callable): returns a watchdog observer
    """

    def __init__(self, loop, logger, observer_factory=Observer):
        self.loop = loop
        self.logger = logger
        self.observer_factory = observer_factory
        self.observer = None
        self.files = queue.Queue()
        self.seen = set()

    def start(self, utdate, cursor):
        self.loop.check_dir()
        naming = self.loop.naming
        existing = [f for f in os.listdir(self.loop.data_in) if naming.is_raw(f, utdate)]
        existing.sort(key=naming.number)
        for fname in existing:
            if cursor.current is None or naming.number(fname) >= cursor.current:
                self.files.put(os.path.join(self.loop.data_in, fname))
        handler = RawFileAlarm(naming, self.files, self.logger)
        self.observer = self.observer_factory()
        self.observer.schedule(handler, self.loop.data_in, recursive=False)
        self.observer.start()
        self.logger.info(f'Watching {self.loop.data_in} for new data')

    def stop(self):
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def next_frames(self, utdate, cursor, skip=False):
        if self.observer is None:
            self.start(utdate, cursor)
        deadline = self.loop.clock() + self.loop.timeout
        while True:
            remaining = deadline - self.loop.clock()
            if remaining <= 0:
                raise LoopTimeout(f'Timeout whilst watching {self.loop.data_in} for new data')
            try:
                path = self.files.get(timeout=min(remaining, self.loop.poll_interval))
            except queue.Empty:
                if self.loop.tick is not None:
                    self.loop.tick()
                continue
            name = os.path.basename(path)
            number = self.loop.naming.number(name)
            if name in self.seen or (utdate is not None and not self.loop.naming.is_raw(name, utdate)):
                continue
            if cursor.current is not None and number < cursor.current:
                continue
            self.seen.add(name)
            self.loop.wait_stable(path, deadline)
            cursor.current = number + 1
            return self.loop.link_and_read(path)
