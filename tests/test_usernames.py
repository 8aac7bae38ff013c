#!/usr/bin/env python3
"""
Unit tests for username allocation.
"""

import os
import random
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_roster_sync.errors import NoUsernameAvailable
from ad_roster_sync.usernames import UsernameAllocator, strip_name


class RecordingPredicate:
    """Existence predicate over a fixed set of names that records every query."""

    def __init__(self, taken=()):
        self.taken = set(taken)
        self.queries = []

    def __call__(self, name):
        self.queries.append(name)
        return name in self.taken


class TestStripName(unittest.TestCase):

    def test_removes_whitespace_hyphens_and_apostrophes(self):
        self.assertEqual(strip_name("O'Brien-Smith Mary Ann"), 'OBrienSmithMaryAnn')
        self.assertEqual(strip_name("D’Angelo\tJo"), 'DAngeloJo')

    def test_keeps_other_characters(self):
        self.assertEqual(strip_name('Müller.Jörg'), 'Müller.Jörg')


class TestAllocate(unittest.TestCase):

    def test_empty_directory_uses_first_initial(self):
        allocator = UsernameAllocator(RecordingPredicate())
        self.assertEqual(allocator.allocate('Ada', 'Lovelace'), 'LovelaceA')

    def test_collision_extends_given_name_prefix(self):
        predicate = RecordingPredicate({'LovelaceA'})
        allocator = UsernameAllocator(predicate)

        self.assertEqual(allocator.allocate('Ada', 'Lovelace'), 'LovelaceAd')
        self.assertEqual(predicate.queries, ['LovelaceA', 'LovelaceAd'])

    def test_full_given_name_is_last_candidate(self):
        predicate = RecordingPredicate({'LovelaceA', 'LovelaceAd'})
        allocator = UsernameAllocator(predicate)

        self.assertEqual(allocator.allocate('Ada', 'Lovelace'), 'LovelaceAda')
        self.assertEqual(predicate.queries, ['LovelaceA', 'LovelaceAd', 'LovelaceAda'])

    def test_all_candidates_taken_raises(self):
        predicate = RecordingPredicate({'LovelaceA', 'LovelaceAd', 'LovelaceAda'})
        allocator = UsernameAllocator(predicate)

        with self.assertRaises(NoUsernameAvailable) as ctx:
            allocator.allocate('Ada', 'Lovelace')

        self.assertEqual(ctx.exception.last_candidate, 'LovelaceAda')
        # Stops at the full name instead of looping further
        self.assertEqual(predicate.queries, ['LovelaceA', 'LovelaceAd', 'LovelaceAda'])

    def test_stripping_applies_to_the_concatenation(self):
        allocator = UsernameAllocator(RecordingPredicate())
        self.assertEqual(allocator.allocate('Mary Ann', "O'Neil-Jones"), 'ONeilJonesM')

    def test_prefix_ending_in_stripped_character_repeats_previous_candidate(self):
        predicate = RecordingPredicate({'DoeA', 'DoeAn'})
        allocator = UsernameAllocator(predicate)

        # 'An-' strips to the same candidate as 'An', then 'An-n' gives 'DoeAnn'
        self.assertEqual(allocator.allocate('An-na', 'Doe'), 'DoeAnn')
        self.assertEqual(predicate.queries, ['DoeA', 'DoeAn', 'DoeAn', 'DoeAnn'])

    def test_empty_given_name_tries_surname_only(self):
        predicate = RecordingPredicate({'Plato'})
        allocator = UsernameAllocator(predicate)

        with self.assertRaises(NoUsernameAvailable):
            allocator.allocate('', 'Plato')
        self.assertEqual(predicate.queries, ['Plato'])

    def test_blank_names_raise_without_querying(self):
        predicate = RecordingPredicate()
        with self.assertRaises(NoUsernameAvailable):
            UsernameAllocator(predicate).allocate(' ', '-')
        self.assertEqual(predicate.queries, [])

    def test_allocation_is_deterministic(self):
        rng = random.Random(1815)
        names = [('Ada', 'Lovelace'), ('Charles', 'Babbage'), ('Mary Ann', "O'Neil"), ('Jo', 'Li')]
        for _ in range(50):
            given, surname = rng.choice(names)
            full = strip_name(surname + given)
            taken = {strip_name(surname + given[:n]) for n in range(1, len(given) + 1) if rng.random() < 0.5}
            taken.discard(full)

            first = UsernameAllocator(RecordingPredicate(taken)).allocate(given, surname)
            second = UsernameAllocator(RecordingPredicate(taken)).allocate(given, surname)
            self.assertEqual(first, second)

    def test_never_returns_a_taken_name(self):
        rng = random.Random(42)
        for _ in range(100):
            given = ''.join(rng.choice('abcde -') for _ in range(rng.randint(1, 8)))
            surname = ''.join(rng.choice('XYZ') for _ in range(rng.randint(1, 4)))
            candidates = list(UsernameAllocator(lambda name: False).candidates(given, surname))
            taken = {c for c in candidates if rng.random() < 0.6}

            try:
                name = UsernameAllocator(lambda n: n in taken).allocate(given, surname)
            except NoUsernameAvailable:
                # Only when the full name candidate (or an empty one) is taken
                full = strip_name(surname + given)
                self.assertTrue(full in taken or not full)
            else:
                self.assertNotIn(name, taken)


class TestRecheck(unittest.TestCase):

    def test_keeps_current_name_when_no_other_account_has_it(self):
        # Predicate reports collisions with *other* accounts only
        allocator = UsernameAllocator(RecordingPredicate())
        self.assertEqual(allocator.recheck('LovelaceA', 'Ada', 'Lovelace'), 'LovelaceA')

    def test_keeps_unusual_current_name(self):
        allocator = UsernameAllocator(RecordingPredicate())
        self.assertEqual(allocator.recheck('alovelace', 'Ada', 'Lovelace'), 'alovelace')

    def test_reallocates_when_current_name_collides(self):
        allocator = UsernameAllocator(RecordingPredicate({'LovelaceA'}))
        self.assertEqual(allocator.recheck('LovelaceA', 'Ada', 'Lovelace'), 'LovelaceAd')

    def test_empty_current_name_allocates(self):
        allocator = UsernameAllocator(RecordingPredicate())
        self.assertEqual(allocator.recheck('', 'Ada', 'Lovelace'), 'LovelaceA')

    def test_literal_existence_check_would_rename_every_account(self):
        """
        With a plain "does this name exist" predicate the account's own name
        always counts as taken, so a matched account would be renamed on every
        run. The orchestrator therefore checks ownership instead.
        """
        directory = {'LovelaceA'}
        allocator = UsernameAllocator(lambda name: name in directory)
        self.assertEqual(allocator.recheck('LovelaceA', 'Ada', 'Lovelace'), 'LovelaceAd')


if __name__ == '__main__':
    unittest.main()
