#---------------------------------------------------------------------
# Copyright 2024 Canadian Light Source, Inc. All rights reserved
#     - see LICENSE.md for limitations on use.
#
# Description:
#     Named counters gathered by the live-data components.
#---------------------------------------------------------------------
import copy


class StatisticsManager(object):
    """
    A Simple class that allows for various statistics to be gathered.

    Everything runs on the one event loop, so counters are updated in place
    without a worker or lock.  Each service owns its own instance.
    """

    def __init__(self):
        self._data = {}

    def increment(self, name, count=1):
        self._data[name] = self._data.get(name, 0) + count

    def get(self, name=None):
        if name is not None:
            return self._data.get(name, 0)
        return copy.deepcopy(self._data)
