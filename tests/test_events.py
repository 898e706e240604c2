import numpy as np

from sandpile_sim.events import EventCounter


def test_event_counter_histogram():
    counter = EventCounter()
    for size in (3, 1, 3, 7, 1, 3):
        counter.add_event(size)

    assert counter.get_events() == {1: 2, 3: 3, 7: 1}
    assert list(counter.get_events()) == [1, 3, 7]
    assert counter.total == 6
    assert len(counter) == 3

    values, counts = counter.to_arrays()
    np.testing.assert_array_equal(values, [1.0, 3.0, 7.0])
    np.testing.assert_array_equal(counts, [2, 3, 1])

    counter.clear()
    assert counter.get_events() == {}
    assert counter.total == 0
