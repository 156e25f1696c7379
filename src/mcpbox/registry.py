import threading


class ConnectionRegistry:
    """
    Holds the supervised connections by server name. Each supervisor owns one registry, so that several
    supervisors, such as in tests, do not share connections.
    """

    def __init__(self):
        self._connections = dict()
        self._lock = threading.Lock()

    def get(self, name):
        with self._lock:
            return self._connections.get(name)

    def get_or_create(self, name, factory):
        """
        Retrieves the connection registered for the name, registering the one built by factory(name) if there
        is none.
        """
        with self._lock:
            connection = self._connections.get(name)
            if connection is None:
                connection = self._connections[name] = factory(name)
            return connection

    def remove(self, name, connection=None):
        """
        Unregisters the named connection. When a connection is given, it is only removed if it is the one
        registered.
        :return: the connection removed, or None
        """
        with self._lock:
            current = self._connections.get(name)
            if current is None or (connection is not None and current is not connection):
                return None
            del self._connections[name]
            return current

    def names(self):
        with self._lock:
            return list(self._connections.keys())

    def connections(self):
        with self._lock:
            return list(self._connections.values())

    def clear(self):
        """ unregisters every connection.
        :return: the connections removed
        """
        with self._lock:
            removed = list(self._connections.values())
            self._connections.clear()
            return removed

    def __contains__(self, name):
        return name in self._connections

    def __len__(self):
        return len(self._connections)
