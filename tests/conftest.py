from geckoproc.test_utils.fixtures import *
