"""
Unit tests for row resolution and run windows.
"""

import random
import unittest

from row_resolver import (
    SharedSourceRowResolver,
    collect_referenced_source_ids,
    merge_source_rows,
    resume_run_options,
    row_window,
)
from workflow_errors import RowResolutionError, WorkflowValidationError
from workflow_models import FailureInfo, RunOptions, SharedDataSource, Workflow


def make_sources():
    return [
        SharedDataSource(id="customers", name="Customers", data=[
            {"name": "Contoso", "group": "10"},
            {"name": "Fabrikam", "group": "20"},
            {"name": "Litware", "group": "30"},
        ]),
        SharedDataSource(id="items", name="Items", data=[{"name": "Bolt"}]),
        SharedDataSource(id="empty", name="Empty source"),
        SharedDataSource(id="live", name="Live", type="dynamic", query="select * from orders"),
    ]


class TestReferencedSources(unittest.TestCase):
    """Test discovery of the sources a workflow uses."""

    def test_first_use_order(self):
        workflow = Workflow(steps=[
            {"type": "input", "fieldMapping": "items:name"},
            {"type": "input", "fieldMapping": "customers:name"},
            {"type": "if", "conditionFieldMapping": "items:name"},
            {"type": "loop-start", "loopDataSource": "live"},
            {"type": "loop-start", "loopDataSource": "primary"},
            {"type": "input", "fieldMapping": "plain"},
        ])
        self.assertEqual(collect_referenced_source_ids(workflow), ["items", "customers", "live"])


class TestMergeRows(unittest.TestCase):
    """Test merging of several sources by row index."""

    def test_no_sources(self):
        self.assertEqual(merge_source_rows([]), [{}])

    def test_short_source_repeats_last_row(self):
        customers, items = make_sources()[:2]
        rows = merge_source_rows([customers, items])
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[2]["items:name"], "Bolt")
        self.assertEqual(rows[2]["customers:name"], "Litware")

    def test_bare_key_from_first_source(self):
        customers, items = make_sources()[:2]
        row = merge_source_rows([customers, items])[0]
        self.assertEqual(row["name"], "Contoso")
        self.assertEqual(row["group"], "10")


class TestSharedSourceRowResolver(unittest.IsolatedAsyncioTestCase):
    """Test resolving rows for a workflow."""

    async def asyncSetUp(self):
        self.sources = make_sources()
        self.fetched = []

        async def load():
            return self.sources

        async def fetch(query):
            self.fetched.append(query)
            return [{"order": "A"}, {"order": "B"}]

        self.load = load
        self.fetch = fetch

    async def test_no_references_gives_one_empty_row(self):
        resolved = await SharedSourceRowResolver(self.load).resolve(Workflow(steps=[{"type": "click"}]))
        self.assertEqual(resolved.rows, [{}])
        self.assertEqual(resolved.fields, [])
        self.assertEqual(len(resolved.sources), 4)

    async def test_resolves_referenced_rows(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "customers:name"}])
        resolved = await SharedSourceRowResolver(self.load).resolve(workflow)
        self.assertEqual(len(resolved.rows), 3)
        self.assertIn("customers:group", resolved.fields)

    async def test_unknown_source(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "ghost:name"}])
        with self.assertRaises(RowResolutionError) as ctx:
            await SharedSourceRowResolver(self.load).resolve(workflow)
        self.assertEqual(str(ctx.exception), "Shared data source not found: ghost")

    async def test_empty_source(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "empty:x"}])
        with self.assertRaises(RowResolutionError) as ctx:
            await SharedSourceRowResolver(self.load).resolve(workflow)
        self.assertEqual(str(ctx.exception), 'Shared data source "Empty source" has no rows')

    async def test_dynamic_source_fetched(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "live:order"}])
        resolved = await SharedSourceRowResolver(self.load, fetcher=self.fetch).resolve(workflow)
        self.assertEqual([r["live:order"] for r in resolved.rows], ["A", "B"])
        self.assertEqual(self.fetched, ["select * from orders"])
        # The loaded sources themselves are not modified
        self.assertEqual(self.sources[3].data, [])

    async def test_dynamic_source_without_fetcher(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "live:order"}])
        with self.assertRaises(RowResolutionError):
            await SharedSourceRowResolver(self.load).resolve(workflow)

    async def test_dynamic_source_missing_query(self):
        self.sources[3].query = "  "
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "live:order"}])
        with self.assertRaises(RowResolutionError) as ctx:
            await SharedSourceRowResolver(self.load, fetcher=self.fetch).resolve(workflow)
        self.assertIn("missing query", str(ctx.exception))

    async def test_dynamic_source_no_rows(self):
        async def fetch_nothing(query):
            return []

        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "live:order"}])
        with self.assertRaises(RowResolutionError) as ctx:
            await SharedSourceRowResolver(self.load, fetcher=fetch_nothing).resolve(workflow)
        self.assertIn("returned no rows", str(ctx.exception))

    async def test_sampling_keeps_order(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "customers:name"}])
        resolver = SharedSourceRowResolver(self.load, sample_size=2, rng=random.Random(7))
        resolved = await resolver.resolve(workflow)
        self.assertEqual(len(resolved.rows), 2)
        order = ["Contoso", "Fabrikam", "Litware"]
        positions = [order.index(r["name"]) for r in resolved.rows]
        self.assertEqual(positions, sorted(positions))

    async def test_sample_larger_than_rows(self):
        workflow = Workflow(steps=[{"type": "input", "fieldMapping": "customers:name"}])
        resolved = await SharedSourceRowResolver(self.load, sample_size=10).resolve(workflow)
        self.assertEqual(len(resolved.rows), 3)


class TestRowWindow(unittest.TestCase):
    """Test the processed row range."""

    def test_defaults(self):
        self.assertEqual(row_window(5, RunOptions()), (0, 5))

    def test_skip_and_limit(self):
        self.assertEqual(row_window(10, RunOptions(skip_rows=2, limit_rows=3)), (2, 5))

    def test_clamped(self):
        self.assertEqual(row_window(4, RunOptions(skip_rows=3, limit_rows=5)), (3, 4))
        self.assertEqual(row_window(4, RunOptions(skip_rows=9)), (4, 4))


class TestResumeRunOptions(unittest.TestCase):
    """Test run options for resuming after a failure."""

    def test_next_within_limit(self):
        failure = FailureInfo(workflow_id="w", row_index=4, total_rows=10)
        options = resume_run_options(failure, RunOptions(skip_rows=2, limit_rows=6), 10, "next")
        self.assertEqual(options.skip_rows, 5)
        self.assertEqual(options.limit_rows, 3)

    def test_retry(self):
        failure = FailureInfo(workflow_id="w", row_index=4, total_rows=10)
        options = resume_run_options(failure, RunOptions(skip_rows=2, limit_rows=6, dry_run=True), 10, "retry")
        self.assertEqual(options.skip_rows, 4)
        self.assertEqual(options.limit_rows, 4)
        self.assertTrue(options.dry_run)

    def test_limit_window_clamped_to_rows(self):
        failure = FailureInfo(workflow_id="w", row_index=3, total_rows=5)
        options = resume_run_options(failure, RunOptions(skip_rows=2, limit_rows=6), 5, "retry")
        self.assertEqual((options.skip_rows, options.limit_rows), (3, 2))

    def test_no_limit(self):
        failure = FailureInfo(workflow_id="w", row_index=1, total_rows=5)
        options = resume_run_options(failure, None, 5, "next")
        self.assertEqual((options.skip_rows, options.limit_rows), (2, 0))

    def test_last_row(self):
        failure = FailureInfo(workflow_id="w", row_index=4, total_rows=5)
        with self.assertRaises(WorkflowValidationError) as ctx:
            resume_run_options(failure, RunOptions(), 5, "next")
        self.assertEqual(str(ctx.exception), "No more rows to process")

    def test_limit_exhausted(self):
        failure = FailureInfo(workflow_id="w", row_index=3, total_rows=10)
        with self.assertRaises(WorkflowValidationError):
            resume_run_options(failure, RunOptions(skip_rows=2, limit_rows=2), 10, "next")

    def test_unknown_mode(self):
        failure = FailureInfo(workflow_id="w", row_index=0, total_rows=3)
        with self.assertRaises(WorkflowValidationError):
            resume_run_options(failure, None, 3, "skip")


if __name__ == '__main__':
    unittest.main()
