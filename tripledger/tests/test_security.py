import unittest

from tripledger.security import hash_password, verify_password


class PasswordHashTests(unittest.TestCase):
    def test_hash_and_verify(self):
        hashed = hash_password("correct horse")
        self.assertNotEqual(hashed, "correct horse")
        self.assertTrue(verify_password("correct horse", hashed))
        self.assertFalse(verify_password("wrong horse", hashed))

    def test_hashes_are_salted(self):
        self.assertNotEqual(hash_password("same"), hash_password("same"))

    def test_bad_stored_hash(self):
        self.assertFalse(verify_password("anything", ""))
        self.assertFalse(verify_password("anything", "not-a-bcrypt-hash"))


if __name__ == "__main__":
    unittest.main()
