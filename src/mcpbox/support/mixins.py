import threading


def quote(val):
    return repr(val) if val is not None else "None"


class StringerMixin:
    """ A repr that lists the instance attributes in key sorted order, skipping private ones. """

    def __repr__(self):
        return "%s(%s)" % (type(self).__name__, self._sorted_items_string())

    def _sorted_items_string(self):
        return ", ".join([str(key) + "=" + quote(val)
                          for key, val in sorted(self.__dict__.items()) if not key.startswith('_')])


class CommonEqualityMixin(object):
    """  a deep equals comparison for value objects. """
    local = threading.local()

    def __eq__(self, other):
        if not hasattr(CommonEqualityMixin.local, 'seen'):
            CommonEqualityMixin.local.seen = []
        seen = CommonEqualityMixin.local.seen
        return hasattr(other, '__dict__') and isinstance(other, self.__class__) \
            and self._dicts_equal(other, seen)

    def _dicts_equal(self, other, seen):
        p = (id(self), id(other))
        if p in seen:
            raise ValueError("recursive comparison of %r" % (p,))
        try:
            seen.append(p)
            result = self.__dict__ == other.__dict__
        finally:
            seen.pop()
        return result

    def __ne__(self, other):
        return not self.__eq__(other)

    __hash__ = None


class FrozenMixin:
    """
    Prevents attributes being assigned once _freeze() has been called, typically at the end of __init__.
    """
    _frozen = False

    def _freeze(self):
        object.__setattr__(self, '_frozen', True)

    def __setattr__(self, key, value):
        if self._frozen:
            raise AttributeError("%s is immutable" % type(self).__name__)
        super().__setattr__(key, value)

    def __delattr__(self, key):
        if self._frozen:
            raise AttributeError("%s is immutable" % type(self).__name__)
        super().__delattr__(key)
